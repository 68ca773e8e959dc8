from __future__ import annotations

import logging

from .gateway import GATEWAY_CONFIG_MAP_NAME
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, KubernetesClients, read_or_none
from .locations import BackupLocationSync, location_to_file_system_config
from .models import FileSystemConfig
from .plugin import PLUGIN_CONFIG_MAP_NAME

logger = logging.getLogger(__name__)

SETTINGS_CONFIG_MAP_NAME = "kotsadm-confg"
GATEWAY_ENABLED_KEY = "minio-enabled-snapshots"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class StorageConfigResolver:
    """Finds the mount the active backend uses. ``None`` means nothing is configured yet."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        locations: BackupLocationSync | None = None,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds
        self.locations = locations or BackupLocationSync(
            clients=clients,
            request_timeout_seconds=request_timeout_seconds,
        )

    def get_current(self, namespace: str, *, plugin_disabled: bool) -> FileSystemConfig | None:
        if plugin_disabled:
            return self._from_config_map(namespace, GATEWAY_CONFIG_MAP_NAME)

        location = self.locations.find(namespace)
        if location is not None:
            file_system_config = location_to_file_system_config(location)
            if file_system_config is not None:
                return file_system_config
            logger.debug("default storage location is not filesystem backed, falling back to ConfigMaps")

        return self._from_config_map(namespace, PLUGIN_CONFIG_MAP_NAME) or self._from_config_map(
            namespace, GATEWAY_CONFIG_MAP_NAME
        )

    def _from_config_map(self, namespace: str, name: str) -> FileSystemConfig | None:
        config_map = read_or_none(
            operation=f"get ConfigMap '{namespace}/{name}'",
            hint="Verify RBAC allows get on configmaps.",
            func=lambda: self.clients.core_api.read_namespaced_config_map(
                name=name, namespace=namespace, _request_timeout=self.request_timeout_seconds
            ),
        )
        if config_map is None:
            return None
        return FileSystemConfig.from_config_map_data(config_map.data)


def is_gateway_disabled(
    clients: KubernetesClients,
    namespace: str,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> bool:
    """Whether this install opted out of the gateway in favor of the plugin backend."""
    config_map = read_or_none(
        operation=f"get ConfigMap '{namespace}/{SETTINGS_CONFIG_MAP_NAME}'",
        hint="Verify RBAC allows get on configmaps.",
        func=lambda: clients.core_api.read_namespaced_config_map(
            name=SETTINGS_CONFIG_MAP_NAME, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if config_map is None or not config_map.data or GATEWAY_ENABLED_KEY not in config_map.data:
        return False

    value = config_map.data[GATEWAY_ENABLED_KEY].strip()
    if value in _TRUE_VALUES:
        return False
    if value in _FALSE_VALUES:
        return True
    raise ValueError(f"failed to parse {GATEWAY_ENABLED_KEY}={value!r} from {SETTINGS_CONFIG_MAP_NAME}")
