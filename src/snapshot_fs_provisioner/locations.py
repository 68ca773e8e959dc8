from __future__ import annotations

import configparser
import copy
import io
import logging
import time
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .gateway import (
    GATEWAY_BUCKET_NAME,
    GATEWAY_CONFIG_MAP_NAME,
    GATEWAY_DEPLOYMENT_NAME,
    GATEWAY_PROVIDER,
    GATEWAY_SERVICE_NAME,
    GATEWAY_SERVICE_PORT,
)
from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, KubernetesClients, cluster_call, delete_if_exists, read_or_none
from .models import FileSystemConfig, GatewayStore

logger = logging.getLogger(__name__)

VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"
LOCATION_PLURAL = "backupstoragelocations"
DEFAULT_LOCATION_NAME = "default"
VELERO_DEPLOYMENT_NAME = "velero"
VELERO_NAMESPACE_CONFIG_MAP_NAME = "kotsadm-velero-namespace"
CLOUD_CREDENTIALS_SECRET_NAME = "cloud-credentials"
HOSTPATH_PROVIDER = "replicated.com/hostpath"
NFS_PROVIDER = "replicated.com/nfs"
PLUGIN_DATA_ROOT = "/var/velero-local-volume-provider"

Location = dict[str, Any]


class LocationNotFoundError(RuntimeError):
    """Raised when the backup engine has no default storage location to update."""


class LocationTimeoutError(TimeoutError):
    """Raised when the storage location does not become available in time."""


def detect_velero_namespace(
    clients: KubernetesClients,
    namespace: str,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> str:
    """Return the backup engine's namespace, or an empty string when it cannot be found.

    Minimal-RBAC installs record the namespace in a ConfigMap next to the
    caller; otherwise deployments are listed cluster-wide.
    """
    velero_namespace = ""
    if namespace:
        velero_namespace = _velero_namespace_from_config_map(clients, namespace, request_timeout_seconds)

    try:
        if velero_namespace:
            deployments = clients.apps_api.list_namespaced_deployment(
                namespace=velero_namespace, _request_timeout=request_timeout_seconds
            ).items
        else:
            deployments = clients.apps_api.list_deployment_for_all_namespaces(
                _request_timeout=request_timeout_seconds
            ).items
    except ApiException as error:
        logger.debug("unable to detect velero namespace: %s", error.reason)
        return ""

    for deployment in deployments or []:
        if deployment.metadata.name == VELERO_DEPLOYMENT_NAME:
            return deployment.metadata.namespace or ""
    return ""


def plugin_provider(file_system_config: FileSystemConfig) -> str:
    return HOSTPATH_PROVIDER if file_system_config.is_host_path else NFS_PROVIDER


def location_to_file_system_config(location: Location) -> FileSystemConfig | None:
    spec = location.get("spec") or {}
    config = spec.get("config") or {}
    provider = spec.get("provider")
    if provider == HOSTPATH_PROVIDER:
        return FileSystemConfig.for_host_path(config.get("path", ""))
    if provider == NFS_PROVIDER:
        return FileSystemConfig.for_nfs(config.get("path", ""), config.get("server", ""))
    return None


class BackupLocationSync:
    """Reads and writes the backup engine's default storage location."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        poll_interval_seconds: float = 10,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.clients = clients
        self.poll_interval_seconds = poll_interval_seconds
        self.request_timeout_seconds = request_timeout_seconds

    def find(self, namespace: str) -> Location | None:
        velero_namespace = detect_velero_namespace(
            self.clients, namespace, request_timeout_seconds=self.request_timeout_seconds
        )
        if not velero_namespace:
            return None

        response = read_or_none(
            operation=f"list backupstoragelocations in '{velero_namespace}'",
            hint="Verify the velero CRDs are installed and RBAC allows list on backupstoragelocations.",
            func=lambda: self.clients.custom_objects_api.list_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=velero_namespace,
                plural=LOCATION_PLURAL,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        if response is None:
            return None

        for location in response.get("items", []):
            if location.get("metadata", {}).get("name") == DEFAULT_LOCATION_NAME:
                return location
        return None

    def update(self, velero_namespace: str, location: Location) -> Location:
        name = location["metadata"]["name"]
        return cluster_call(
            operation=f"update backupstoragelocation '{velero_namespace}/{name}'",
            hint="Retry if the location changed concurrently.",
            func=lambda: self.clients.custom_objects_api.replace_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=velero_namespace,
                plural=LOCATION_PLURAL,
                name=name,
                body=location,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def revert(self, namespace: str, previous: Location) -> Location:
        """Put back the spec captured before a failed migration."""
        current = self.find(namespace)
        if current is None:
            raise LocationNotFoundError("backup storage location not found")

        current["spec"] = copy.deepcopy(previous["spec"])
        velero_namespace = current["metadata"]["namespace"]
        logger.info("reverting backup storage location %s/%s", velero_namespace, current["metadata"]["name"])
        return self.update(velero_namespace, current)

    def apply_plugin_config(
        self,
        location: Location,
        file_system_config: FileSystemConfig,
        *,
        bucket: str,
        prefix: str = "",
    ) -> Location:
        if file_system_config.nfs is not None and not file_system_config.nfs.path:
            file_system_config = FileSystemConfig.for_nfs("/", file_system_config.nfs.server)

        updated = copy.deepcopy(location)
        spec = updated.setdefault("spec", {})
        restic_dir = "/".join(part.strip("/") for part in (bucket, prefix) if part.strip("/"))
        config = {
            "path": file_system_config.mount_path,
            "resticRepoPrefix": f"{PLUGIN_DATA_ROOT}/{restic_dir}/restic",
        }
        if file_system_config.nfs is not None:
            config["server"] = file_system_config.nfs.server
        spec["provider"] = plugin_provider(file_system_config)
        spec["config"] = config
        object_storage = spec.setdefault("objectStorage", {})
        object_storage["bucket"] = bucket
        if prefix:
            object_storage["prefix"] = prefix
        else:
            object_storage.pop("prefix", None)
        # forces an immediate sync by the backup engine
        updated.setdefault("status", {})["lastSyncedTime"] = None
        return updated

    def apply_gateway_config(self, location: Location, store: GatewayStore) -> Location:
        updated = copy.deepcopy(location)
        spec = updated.setdefault("spec", {})
        spec["provider"] = GATEWAY_PROVIDER
        spec["config"] = {
            "region": store.region,
            "s3Url": store.endpoint,
            "publicUrl": f"http://{store.object_store_cluster_ip}:{GATEWAY_SERVICE_PORT}",
            "s3ForcePathStyle": "true",
        }
        spec.setdefault("objectStorage", {})["bucket"] = GATEWAY_BUCKET_NAME

        velero_namespace = updated.get("metadata", {}).get("namespace", "")
        self.ensure_cloud_credentials(velero_namespace, build_aws_credentials(store.access_key_id, store.secret_access_key))
        return updated

    def ensure_cloud_credentials(self, velero_namespace: str, credentials: str) -> None:
        existing = read_or_none(
            operation=f"get Secret '{velero_namespace}/{CLOUD_CREDENTIALS_SECRET_NAME}'",
            hint="Verify RBAC allows get on secrets in the velero namespace.",
            func=lambda: self.clients.core_api.read_namespaced_secret(
                name=CLOUD_CREDENTIALS_SECRET_NAME,
                namespace=velero_namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        if existing is None:
            secret = client.V1Secret(
                api_version="v1",
                kind="Secret",
                metadata=client.V1ObjectMeta(name=CLOUD_CREDENTIALS_SECRET_NAME, namespace=velero_namespace),
                string_data={"cloud": credentials},
            )
            cluster_call(
                operation=f"create Secret '{velero_namespace}/{CLOUD_CREDENTIALS_SECRET_NAME}'",
                hint="Verify RBAC allows create on secrets in the velero namespace.",
                func=lambda: self.clients.core_api.create_namespaced_secret(
                    namespace=velero_namespace, body=secret, _request_timeout=self.request_timeout_seconds
                ),
            )
            return

        existing.data = None
        existing.string_data = {"cloud": credentials}
        cluster_call(
            operation=f"update Secret '{velero_namespace}/{CLOUD_CREDENTIALS_SECRET_NAME}'",
            hint="Retry if the secret changed concurrently.",
            func=lambda: self.clients.core_api.replace_namespaced_secret(
                name=CLOUD_CREDENTIALS_SECRET_NAME,
                namespace=velero_namespace,
                body=existing,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def wait_until_available(self, velero_namespace: str, *, timeout_seconds: float = 300) -> None:
        deadline = time.time() + timeout_seconds
        while time.time() < deadline:
            location = cluster_call(
                operation=f"get backupstoragelocation '{velero_namespace}/{DEFAULT_LOCATION_NAME}'",
                hint="Verify the default backup storage location exists.",
                func=lambda: self.clients.custom_objects_api.get_namespaced_custom_object(
                    group=VELERO_GROUP,
                    version=VELERO_VERSION,
                    namespace=velero_namespace,
                    plural=LOCATION_PLURAL,
                    name=DEFAULT_LOCATION_NAME,
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
            status = location.get("status") or {}
            if status.get("phase") == "Available" and status.get("lastSyncedTime"):
                return
            time.sleep(self.poll_interval_seconds)

        raise LocationTimeoutError("timed out waiting for default backup storage location to be available")

    def delete_gateway(self, namespace: str) -> None:
        """Remove the gateway objects. The credentials Secret is left behind for recovery."""
        delete_if_exists(
            operation=f"delete ConfigMap '{namespace}/{GATEWAY_CONFIG_MAP_NAME}'",
            func=lambda: self.clients.core_api.delete_namespaced_config_map(
                name=GATEWAY_CONFIG_MAP_NAME, namespace=namespace, _request_timeout=self.request_timeout_seconds
            ),
        )
        delete_if_exists(
            operation=f"delete Deployment '{namespace}/{GATEWAY_DEPLOYMENT_NAME}'",
            func=lambda: self.clients.apps_api.delete_namespaced_deployment(
                name=GATEWAY_DEPLOYMENT_NAME, namespace=namespace, _request_timeout=self.request_timeout_seconds
            ),
        )
        delete_if_exists(
            operation=f"delete Service '{namespace}/{GATEWAY_SERVICE_NAME}'",
            func=lambda: self.clients.core_api.delete_namespaced_service(
                name=GATEWAY_SERVICE_NAME, namespace=namespace, _request_timeout=self.request_timeout_seconds
            ),
        )
        logger.info("deleted filesystem gateway objects in %s", namespace)


def build_aws_credentials(access_key_id: str, secret_access_key: str) -> str:
    parser = configparser.ConfigParser()
    parser["default"] = {
        "aws_access_key_id": access_key_id,
        "aws_secret_access_key": secret_access_key,
    }
    buffer = io.StringIO()
    parser.write(buffer)
    return buffer.getvalue()


def _velero_namespace_from_config_map(clients: KubernetesClients, namespace: str, request_timeout_seconds: int) -> str:
    try:
        config_map = clients.core_api.read_namespaced_config_map(
            name=VELERO_NAMESPACE_CONFIG_MAP_NAME, namespace=namespace, _request_timeout=request_timeout_seconds
        )
    except ApiException:
        return ""
    if not config_map.data:
        return ""
    return config_map.data.get("veleroNamespace", "")
