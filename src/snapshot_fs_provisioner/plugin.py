from __future__ import annotations

import hashlib
import logging

from kubernetes import client

from .config import ProvisionerConfig
from .k8s import KubernetesClients, cluster_call, ensure_config_map, read_or_none
from .locations import detect_velero_namespace, plugin_provider
from .models import DeployOptions, FileSystemConfig

logger = logging.getLogger(__name__)

PLUGIN_CONFIG_MAP_NAME = "kotsadm-fs-lvp"
DISCOVERY_CONFIG_MAP_NAME = "local-volume-provider-config"
PLUGIN_CONFIG_LABEL = "velero.io/plugin-config"
OBJECT_STORE_LABEL_VALUE = "ObjectStore"


def plugin_bucket(file_system_config: FileSystemConfig) -> str:
    """Bucket name derived from the mount descriptor, stable for the same mount."""
    digest = hashlib.md5(file_system_config.to_json().encode()).digest()
    return f"velero-lvp-{digest[:6].hex()}"


class PluginConfigReconciler:
    """Configures the backup engine's local-volume plugin to use the mount directly."""

    def __init__(self, *, clients: KubernetesClients, config: ProvisionerConfig) -> None:
        self.clients = clients
        self.config = config

    def deploy(self, options: DeployOptions) -> str:
        velero_namespace = detect_velero_namespace(
            self.clients, options.namespace, request_timeout_seconds=self.config.request_timeout_seconds
        )
        self.ensure(options, velero_namespace)
        return velero_namespace

    def ensure(self, options: DeployOptions, velero_namespace: str) -> bool:
        """Upsert the plugin ConfigMaps; returns whether the discovery ConfigMap was touched."""
        ensure_config_map(
            self.clients,
            options.namespace,
            client.V1ConfigMap(
                api_version="v1",
                kind="ConfigMap",
                metadata=client.V1ObjectMeta(name=PLUGIN_CONFIG_MAP_NAME),
                data=options.file_system_config.to_config_map_data(),
            ),
            request_timeout_seconds=self.config.request_timeout_seconds,
        )

        if options.is_openshift or not velero_namespace:
            logger.info("skipping local-volume plugin configuration (openshift=%s)", options.is_openshift)
            return False

        self._ensure_discovery_config_map(options.file_system_config, velero_namespace)
        return True

    def _ensure_discovery_config_map(self, file_system_config: FileSystemConfig, velero_namespace: str) -> None:
        provider = plugin_provider(file_system_config)
        data = self._discovery_data(file_system_config)

        existing = cluster_call(
            operation=f"list plugin ConfigMaps in '{velero_namespace}'",
            hint="Verify RBAC allows list on configmaps in the velero namespace.",
            func=lambda: self.clients.core_api.list_namespaced_config_map(
                namespace=velero_namespace,
                label_selector=f"{provider}={OBJECT_STORE_LABEL_VALUE}",
                _request_timeout=self.config.request_timeout_seconds,
            ).items,
        )
        if existing:
            config_map = existing[0]
        else:
            # the single discovery map may still be labeled for the other provider
            config_map = read_or_none(
                operation=f"get ConfigMap '{velero_namespace}/{DISCOVERY_CONFIG_MAP_NAME}'",
                hint="Verify RBAC allows get on configmaps in the velero namespace.",
                func=lambda: self.clients.core_api.read_namespaced_config_map(
                    name=DISCOVERY_CONFIG_MAP_NAME,
                    namespace=velero_namespace,
                    _request_timeout=self.config.request_timeout_seconds,
                ),
            )

        if config_map is None:
            desired = client.V1ConfigMap(
                api_version="v1",
                kind="ConfigMap",
                metadata=client.V1ObjectMeta(
                    name=DISCOVERY_CONFIG_MAP_NAME,
                    namespace=velero_namespace,
                    labels={
                        PLUGIN_CONFIG_LABEL: "",
                        provider: OBJECT_STORE_LABEL_VALUE,
                    },
                ),
                data=data,
            )
            logger.info("creating plugin ConfigMap %s/%s", velero_namespace, DISCOVERY_CONFIG_MAP_NAME)
            cluster_call(
                operation=f"create ConfigMap '{velero_namespace}/{DISCOVERY_CONFIG_MAP_NAME}'",
                hint="Verify RBAC allows create on configmaps in the velero namespace.",
                func=lambda: self.clients.core_api.create_namespaced_config_map(
                    namespace=velero_namespace, body=desired, _request_timeout=self.config.request_timeout_seconds
                ),
            )
            return

        config_map.data = {**(config_map.data or {}), **data}
        config_map.metadata.labels = {
            **(config_map.metadata.labels or {}),
            PLUGIN_CONFIG_LABEL: "",
            provider: OBJECT_STORE_LABEL_VALUE,
        }
        name = config_map.metadata.name
        logger.info("updating plugin ConfigMap %s/%s", velero_namespace, name)
        cluster_call(
            operation=f"update ConfigMap '{velero_namespace}/{name}'",
            hint="Retry if the ConfigMap changed concurrently.",
            func=lambda: self.clients.core_api.replace_namespaced_config_map(
                name=name,
                namespace=velero_namespace,
                body=config_map,
                _request_timeout=self.config.request_timeout_seconds,
            ),
        )

    def _discovery_data(self, file_system_config: FileSystemConfig) -> dict[str, str]:
        run_as = str(self.config.run_as_user)
        data = {
            "securityContextRunAsUser": run_as,
            "securityContextFsGroup": run_as,
            "preserveVolumes": plugin_bucket(file_system_config),
        }
        if self.config.plugin_fileserver_image:
            data["fileserverImage"] = self.config.plugin_fileserver_image
        return data
