from __future__ import annotations

import hashlib
from types import SimpleNamespace
from unittest.mock import Mock

from kubernetes import client
from kubernetes.client import ApiException

from snapshot_fs_provisioner.config import ProvisionerConfig
from snapshot_fs_provisioner.k8s import KubernetesClients
from snapshot_fs_provisioner.models import DeployOptions, FileSystemConfig
from snapshot_fs_provisioner.plugin import (
    DISCOVERY_CONFIG_MAP_NAME,
    PLUGIN_CONFIG_LABEL,
    PLUGIN_CONFIG_MAP_NAME,
    PluginConfigReconciler,
    plugin_bucket,
)


def _clients(core_api: Mock, apps_api: Mock | None = None) -> KubernetesClients:
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api,
        apps_api=apps_api or Mock(),
        custom_objects_api=Mock(),
    )


def _core_api(config_maps: dict[tuple[str, str], client.V1ConfigMap] | None = None, labeled: list | None = None) -> Mock:
    config_maps = config_maps or {}
    core_api = Mock()

    def read(name: str, namespace: str, **_kwargs) -> client.V1ConfigMap:
        if (namespace, name) not in config_maps:
            raise ApiException(status=404, reason="Not Found")
        return config_maps[(namespace, name)]

    core_api.read_namespaced_config_map.side_effect = read
    core_api.list_namespaced_config_map.return_value = SimpleNamespace(items=labeled or [])
    return core_api


def _options(*, file_system_config: FileSystemConfig | None = None, is_openshift: bool = False) -> DeployOptions:
    return DeployOptions(
        namespace="apps",
        file_system_config=file_system_config or FileSystemConfig.for_host_path("/backups"),
        is_openshift=is_openshift,
    )


def test_plugin_bucket_is_derived_from_mount_descriptor() -> None:
    config = FileSystemConfig.for_host_path("/backups")
    expected = hashlib.md5(b'{"hostPath":"/backups"}').digest()[:6].hex()

    assert plugin_bucket(config) == f"velero-lvp-{expected}"
    assert plugin_bucket(config) == plugin_bucket(FileSystemConfig.for_host_path("/backups"))
    assert plugin_bucket(config) != plugin_bucket(FileSystemConfig.for_nfs("/backups", "nfs"))


def test_ensure_on_openshift_only_writes_local_config_map() -> None:
    core_api = _core_api()
    reconciler = PluginConfigReconciler(clients=_clients(core_api), config=ProvisionerConfig())

    assert reconciler.ensure(_options(is_openshift=True), "velero") is False

    body = core_api.create_namespaced_config_map.call_args.kwargs["body"]
    assert body.metadata.name == PLUGIN_CONFIG_MAP_NAME
    assert body.data == {"HOSTPATH": "/backups"}
    core_api.list_namespaced_config_map.assert_not_called()


def test_ensure_without_velero_namespace_skips_discovery_config_map() -> None:
    core_api = _core_api()
    reconciler = PluginConfigReconciler(clients=_clients(core_api), config=ProvisionerConfig())

    assert reconciler.ensure(_options(), "") is False
    assert core_api.create_namespaced_config_map.call_count == 1


def test_ensure_creates_labeled_discovery_config_map() -> None:
    core_api = _core_api()
    config = ProvisionerConfig(run_as_user=1001, plugin_fileserver_image="replicated/local-volume-fileserver:v0.3")
    reconciler = PluginConfigReconciler(clients=_clients(core_api), config=config)
    options = _options(file_system_config=FileSystemConfig.for_nfs("/exports", "10.0.0.5"))

    assert reconciler.ensure(options, "velero") is True

    assert core_api.list_namespaced_config_map.call_args.kwargs == {
        "namespace": "velero",
        "label_selector": "replicated.com/nfs=ObjectStore",
        "_request_timeout": 20,
    }
    created = [call.kwargs for call in core_api.create_namespaced_config_map.call_args_list]
    discovery = next(kwargs["body"] for kwargs in created if kwargs["namespace"] == "velero")
    assert discovery.metadata.name == DISCOVERY_CONFIG_MAP_NAME
    assert discovery.metadata.labels == {PLUGIN_CONFIG_LABEL: "", "replicated.com/nfs": "ObjectStore"}
    assert discovery.data == {
        "securityContextRunAsUser": "1001",
        "securityContextFsGroup": "1001",
        "preserveVolumes": plugin_bucket(options.file_system_config),
        "fileserverImage": "replicated/local-volume-fileserver:v0.3",
    }


def test_ensure_relabels_existing_discovery_config_map_for_new_provider() -> None:
    existing = client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=DISCOVERY_CONFIG_MAP_NAME,
            labels={PLUGIN_CONFIG_LABEL: "", "replicated.com/nfs": "ObjectStore"},
        ),
        data={"preserveVolumes": "velero-lvp-old", "custom": "kept"},
    )
    core_api = _core_api({("velero", DISCOVERY_CONFIG_MAP_NAME): existing})
    reconciler = PluginConfigReconciler(clients=_clients(core_api), config=ProvisionerConfig())

    reconciler.ensure(_options(), "velero")

    body = core_api.replace_namespaced_config_map.call_args.kwargs["body"]
    assert body.metadata.labels["replicated.com/hostpath"] == "ObjectStore"
    assert body.data["custom"] == "kept"
    assert body.data["preserveVolumes"] == plugin_bucket(FileSystemConfig.for_host_path("/backups"))
    assert "fileserverImage" not in body.data


def test_deploy_detects_velero_namespace_from_config_map() -> None:
    namespace_map = client.V1ConfigMap(
        metadata=client.V1ObjectMeta(name="kotsadm-velero-namespace"),
        data={"veleroNamespace": "backup-system"},
    )
    core_api = _core_api({("apps", "kotsadm-velero-namespace"): namespace_map})
    apps_api = Mock()
    apps_api.list_namespaced_deployment.return_value = SimpleNamespace(
        items=[SimpleNamespace(metadata=SimpleNamespace(name="velero", namespace="backup-system"))]
    )
    reconciler = PluginConfigReconciler(clients=_clients(core_api, apps_api), config=ProvisionerConfig())

    assert reconciler.deploy(_options()) == "backup-system"

    apps_api.list_namespaced_deployment.assert_called_once_with(namespace="backup-system", _request_timeout=20)
    apps_api.list_deployment_for_all_namespaces.assert_not_called()


def test_ensure_passes_configured_request_timeout_to_every_call() -> None:
    core_api = _core_api()
    config = ProvisionerConfig(request_timeout_seconds=9)
    reconciler = PluginConfigReconciler(clients=_clients(core_api), config=config)

    reconciler.ensure(_options(), "velero")

    calls = [
        *core_api.read_namespaced_config_map.call_args_list,
        *core_api.list_namespaced_config_map.call_args_list,
        *core_api.create_namespaced_config_map.call_args_list,
    ]
    assert len(calls) == 5
    assert all(call.kwargs["_request_timeout"] == 9 for call in calls)
