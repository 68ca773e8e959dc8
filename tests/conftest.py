from __future__ import annotations

import copy
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from snapshot_fs_provisioner.k8s import KubernetesClients
from snapshot_fs_provisioner.models import CheckProbeOutput, DeployOptions

_CORE_KINDS = {
    "ConfigMap": "config_map",
    "Secret": "secret",
    "Service": "service",
}
_APPS_KINDS = {
    "Deployment": "deployment",
}


class FakeCluster:
    """In-memory stand-in for the namespaced object endpoints the reconcilers use."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], object] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.core_api = Mock()
        self.apps_api = Mock()
        self.custom_objects_api = Mock()

        for kind, suffix in _CORE_KINDS.items():
            self._wire(self.core_api, kind, suffix)
        for kind, suffix in _APPS_KINDS.items():
            self._wire(self.apps_api, kind, suffix)

    @property
    def clients(self) -> KubernetesClients:
        return KubernetesClients(
            api_client=Mock(),
            core_api=self.core_api,
            apps_api=self.apps_api,
            custom_objects_api=self.custom_objects_api,
        )

    def count(self, kind: str) -> int:
        return sum(1 for stored_kind, _, _ in self.objects if stored_kind == kind)

    def get(self, kind: str, namespace: str, name: str) -> object:
        return self.objects[(kind, namespace, name)]

    def put(self, kind: str, namespace: str, obj: object) -> None:
        self.objects[(kind, namespace, obj.metadata.name)] = copy.deepcopy(obj)

    def snapshot(self) -> dict[tuple[str, str, str], dict]:
        return {key: obj.to_dict() for key, obj in self.objects.items()}

    def _wire(self, api: Mock, kind: str, suffix: str) -> None:
        getattr(api, f"read_namespaced_{suffix}").side_effect = self._reader(kind)
        getattr(api, f"create_namespaced_{suffix}").side_effect = self._creator(kind)
        getattr(api, f"replace_namespaced_{suffix}").side_effect = self._replacer(kind)
        getattr(api, f"delete_namespaced_{suffix}").side_effect = self._deleter(kind)

    def _reader(self, kind: str):
        def read(name: str, namespace: str, **_kwargs):
            key = (kind, namespace, name)
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            return copy.deepcopy(self.objects[key])

        return read

    def _creator(self, kind: str):
        def create(namespace: str, body, **_kwargs):
            key = (kind, namespace, body.metadata.name)
            if key in self.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            self.objects[key] = copy.deepcopy(body)
            self.writes.append(("create", kind, body.metadata.name))
            return copy.deepcopy(body)

        return create

    def _replacer(self, kind: str):
        def replace(name: str, namespace: str, body, **_kwargs):
            key = (kind, namespace, name)
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            self.objects[key] = copy.deepcopy(body)
            self.writes.append(("replace", kind, name))
            return copy.deepcopy(body)

        return replace

    def _deleter(self, kind: str):
        def delete(name: str, namespace: str, **_kwargs):
            key = (kind, namespace, name)
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            del self.objects[key]
            self.writes.append(("delete", kind, name))

        return delete


class FakeMount:
    """Mount whose gateway state is changed only through the probe calls."""

    def __init__(self, *, has_state: bool = False, fingerprint: str = "", writable: bool = True) -> None:
        self.has_state = has_state
        self.fingerprint = fingerprint
        self.writable = writable
        self.calls: list[str] = []

    def check(self, options: DeployOptions) -> CheckProbeOutput:
        self.calls.append("check")
        return CheckProbeOutput(
            has_existing_state=self.has_state,
            fingerprint=self.fingerprint,
            writable=self.writable,
        )

    def reset(self, options: DeployOptions) -> None:
        self.calls.append("reset")
        self.has_state = False
        self.fingerprint = ""

    def mark(self, options: DeployOptions, keys_fingerprint: str) -> None:
        self.calls.append("mark")
        self.has_state = True
        self.fingerprint = keys_fingerprint


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
