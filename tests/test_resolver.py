from __future__ import annotations

from unittest.mock import Mock

import pytest
from kubernetes import client
from kubernetes.client import ApiException

from snapshot_fs_provisioner.k8s import ClusterObjectError, KubernetesClients
from snapshot_fs_provisioner.models import FileSystemConfig
from snapshot_fs_provisioner.resolver import StorageConfigResolver, is_gateway_disabled


def _clients(config_maps: dict[str, dict[str, str] | None]) -> KubernetesClients:
    core_api = Mock()

    def read(name: str, namespace: str, **_kwargs) -> client.V1ConfigMap:
        if name not in config_maps:
            raise ApiException(status=404, reason="Not Found")
        return client.V1ConfigMap(metadata=client.V1ObjectMeta(name=name, namespace=namespace), data=config_maps[name])

    core_api.read_namespaced_config_map.side_effect = read
    return KubernetesClients(api_client=Mock(), core_api=core_api, apps_api=Mock(), custom_objects_api=Mock())


def _resolver(config_maps: dict[str, dict[str, str] | None], location: dict | None = None) -> StorageConfigResolver:
    locations = Mock()
    locations.find.return_value = location
    return StorageConfigResolver(clients=_clients(config_maps), locations=locations)


def _location(provider: str, config: dict[str, str]) -> dict:
    return {"metadata": {"name": "default"}, "spec": {"provider": provider, "config": config}}


def test_plugin_disabled_reads_only_gateway_config_map() -> None:
    resolver = _resolver(
        {"kotsadm-fs-minio": {"HOSTPATH": "/gateway"}, "kotsadm-fs-lvp": {"HOSTPATH": "/plugin"}},
        location=_location("replicated.com/hostpath", {"path": "/location"}),
    )

    assert resolver.get_current("apps", plugin_disabled=True) == FileSystemConfig.for_host_path("/gateway")
    resolver.locations.find.assert_not_called()


def test_plugin_disabled_without_gateway_config_map_is_unconfigured() -> None:
    assert _resolver({}).get_current("apps", plugin_disabled=True) is None


def test_filesystem_backed_location_wins() -> None:
    resolver = _resolver(
        {"kotsadm-fs-lvp": {"HOSTPATH": "/plugin"}, "kotsadm-fs-minio": {"HOSTPATH": "/gateway"}},
        location=_location("replicated.com/nfs", {"path": "/exports", "server": "10.0.0.5"}),
    )

    assert resolver.get_current("apps", plugin_disabled=False) == FileSystemConfig.for_nfs("/exports", "10.0.0.5")


def test_object_store_location_falls_back_to_plugin_then_gateway_config_map() -> None:
    location = _location("aws", {"region": "us-east-1"})

    with_plugin = _resolver(
        {"kotsadm-fs-lvp": {"HOSTPATH": "/plugin"}, "kotsadm-fs-minio": {"HOSTPATH": "/gateway"}},
        location=location,
    )
    gateway_only = _resolver({"kotsadm-fs-minio": {"NFS_PATH": "/e", "NFS_SERVER": "nfs"}}, location=location)

    assert with_plugin.get_current("apps", plugin_disabled=False) == FileSystemConfig.for_host_path("/plugin")
    assert gateway_only.get_current("apps", plugin_disabled=False) == FileSystemConfig.for_nfs("/e", "nfs")


def test_without_location_falls_back_to_gateway_config_map() -> None:
    resolver = _resolver({"kotsadm-fs-minio": {"HOSTPATH": "/data/backups"}}, location=None)

    assert resolver.get_current("apps", plugin_disabled=False) == FileSystemConfig.for_host_path("/data/backups")


def test_empty_config_maps_resolve_to_unconfigured() -> None:
    resolver = _resolver({"kotsadm-fs-lvp": None, "kotsadm-fs-minio": {}})

    assert resolver.get_current("apps", plugin_disabled=False) is None


def test_resolver_propagates_non_not_found_errors() -> None:
    clients = _clients({})
    clients.core_api.read_namespaced_config_map.side_effect = ApiException(status=403, reason="Forbidden")
    resolver = StorageConfigResolver(clients=clients, locations=Mock(find=Mock(return_value=None)))

    with pytest.raises(ClusterObjectError, match="403"):
        resolver.get_current("apps", plugin_disabled=True)


@pytest.mark.parametrize(
    ("config_maps", "expected"),
    [
        ({}, False),
        ({"kotsadm-confg": None}, False),
        ({"kotsadm-confg": {"other": "x"}}, False),
        ({"kotsadm-confg": {"minio-enabled-snapshots": "true"}}, False),
        ({"kotsadm-confg": {"minio-enabled-snapshots": "1"}}, False),
        ({"kotsadm-confg": {"minio-enabled-snapshots": "false"}}, True),
        ({"kotsadm-confg": {"minio-enabled-snapshots": "F"}}, True),
    ],
)
def test_is_gateway_disabled(config_maps: dict, expected: bool) -> None:
    assert is_gateway_disabled(_clients(config_maps), "apps") is expected


def test_is_gateway_disabled_rejects_unparseable_value() -> None:
    clients = _clients({"kotsadm-confg": {"minio-enabled-snapshots": "maybe"}})

    with pytest.raises(ValueError, match="minio-enabled-snapshots"):
        is_gateway_disabled(clients, "apps")


def test_without_location_plugin_config_map_wins_over_disagreeing_gateway_config_map() -> None:
    resolver = _resolver(
        {"kotsadm-fs-lvp": {"HOSTPATH": "/stale-lvp"}, "kotsadm-fs-minio": {"HOSTPATH": "/gateway"}},
        location=None,
    )

    assert resolver.get_current("apps", plugin_disabled=False) == FileSystemConfig.for_host_path("/stale-lvp")


def test_resolver_bounds_config_map_reads_with_request_timeout() -> None:
    clients = _clients({"kotsadm-fs-minio": {"HOSTPATH": "/gateway"}})
    resolver = StorageConfigResolver(clients=clients, request_timeout_seconds=4)

    assert resolver.get_current("apps", plugin_disabled=True) == FileSystemConfig.for_host_path("/gateway")
    assert clients.core_api.read_namespaced_config_map.call_args.kwargs["_request_timeout"] == 4
    assert resolver.locations.request_timeout_seconds == 4
    assert is_gateway_disabled(clients, "apps", request_timeout_seconds=3) is False
    assert clients.core_api.read_namespaced_config_map.call_args.kwargs["_request_timeout"] == 3
