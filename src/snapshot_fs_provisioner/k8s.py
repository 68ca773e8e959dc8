from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import time
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import FileSystemConfig

logger = logging.getLogger(__name__)

OPENSHIFT_API_GROUP = "apps.openshift.io"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_objects_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ClusterObjectError(RuntimeError):
    """Raised when a cluster API call made during reconcile fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class DeploymentTimeoutError(TimeoutError):
    """Raised when a deployment does not reach the expected replica state in time."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def is_openshift(
    clients: KubernetesClients,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> bool:
    groups = cluster_call(
        operation="list API groups",
        hint="Confirm cluster connectivity.",
        func=lambda: client.ApisApi(clients.api_client)
        .get_api_versions(_request_timeout=request_timeout_seconds)
        .groups,
    )
    return any(group.name == OPENSHIFT_API_GROUP for group in groups or [])


def build_volume(
    name: str,
    file_system_config: FileSystemConfig,
    *,
    host_path_type: str | None = None,
) -> client.V1Volume:
    """Volume for the mount. ``host_path_type="Directory"`` makes a missing host path fail the mount."""
    if file_system_config.host_path is not None:
        return client.V1Volume(
            name=name,
            host_path=client.V1HostPathVolumeSource(path=file_system_config.host_path, type=host_path_type),
        )
    nfs = file_system_config.nfs
    return client.V1Volume(
        name=name,
        nfs=client.V1NFSVolumeSource(path=nfs.path, server=nfs.server),
    )


def ensure_config_map(
    clients: KubernetesClients,
    namespace: str,
    desired: client.V1ConfigMap,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1ConfigMap:
    name = desired.metadata.name
    existing = read_or_none(
        operation=f"get ConfigMap '{namespace}/{name}'",
        hint="Verify RBAC allows get on configmaps.",
        func=lambda: clients.core_api.read_namespaced_config_map(
            name=name, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if existing is None:
        logger.info("creating ConfigMap %s/%s", namespace, name)
        return cluster_call(
            operation=f"create ConfigMap '{namespace}/{name}'",
            hint="Verify RBAC allows create on configmaps.",
            func=lambda: clients.core_api.create_namespaced_config_map(
                namespace=namespace, body=desired, _request_timeout=request_timeout_seconds
            ),
        )

    existing.data = desired.data
    if desired.metadata.labels:
        existing.metadata.labels = {**(existing.metadata.labels or {}), **desired.metadata.labels}
    logger.info("updating ConfigMap %s/%s", namespace, name)
    return cluster_call(
        operation=f"update ConfigMap '{namespace}/{name}'",
        hint="Retry the reconcile if the object changed concurrently.",
        func=lambda: clients.core_api.replace_namespaced_config_map(
            name=name, namespace=namespace, body=existing, _request_timeout=request_timeout_seconds
        ),
    )


def ensure_secret(
    clients: KubernetesClients,
    namespace: str,
    desired_factory: Callable[[], client.V1Secret],
    *,
    name: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> tuple[client.V1Secret, bool]:
    """Create the secret from ``desired_factory`` only when it is absent.

    An existing secret is returned untouched. The second element of the
    result reports whether a new secret was created.
    """
    existing = read_or_none(
        operation=f"get Secret '{namespace}/{name}'",
        hint="Verify RBAC allows get on secrets.",
        func=lambda: clients.core_api.read_namespaced_secret(
            name=name, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if existing is not None:
        return existing, False

    desired = desired_factory()
    logger.info("creating Secret %s/%s", namespace, name)
    created = cluster_call(
        operation=f"create Secret '{namespace}/{name}'",
        hint="Verify RBAC allows create on secrets.",
        func=lambda: clients.core_api.create_namespaced_secret(
            namespace=namespace, body=desired, _request_timeout=request_timeout_seconds
        ),
    )
    return created, True


def ensure_deployment(
    clients: KubernetesClients,
    namespace: str,
    desired: client.V1Deployment,
    merge: Callable[[client.V1Deployment, client.V1Deployment], client.V1Deployment],
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1Deployment:
    name = desired.metadata.name
    existing = read_or_none(
        operation=f"get Deployment '{namespace}/{name}'",
        hint="Verify RBAC allows get on deployments.",
        func=lambda: clients.apps_api.read_namespaced_deployment(
            name=name, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if existing is None:
        logger.info("creating Deployment %s/%s", namespace, name)
        return cluster_call(
            operation=f"create Deployment '{namespace}/{name}'",
            hint="Verify RBAC allows create on deployments.",
            func=lambda: clients.apps_api.create_namespaced_deployment(
                namespace=namespace, body=desired, _request_timeout=request_timeout_seconds
            ),
        )

    updated = merge(existing, desired)
    logger.info("updating Deployment %s/%s", namespace, name)
    return cluster_call(
        operation=f"update Deployment '{namespace}/{name}'",
        hint="Retry the reconcile if the object changed concurrently.",
        func=lambda: clients.apps_api.replace_namespaced_deployment(
            name=name, namespace=namespace, body=updated, _request_timeout=request_timeout_seconds
        ),
    )


def ensure_service(
    clients: KubernetesClients,
    namespace: str,
    desired: client.V1Service,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> client.V1Service:
    name = desired.metadata.name
    existing = read_or_none(
        operation=f"get Service '{namespace}/{name}'",
        hint="Verify RBAC allows get on services.",
        func=lambda: clients.core_api.read_namespaced_service(
            name=name, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if existing is None:
        logger.info("creating Service %s/%s", namespace, name)
        return cluster_call(
            operation=f"create Service '{namespace}/{name}'",
            hint="Verify RBAC allows create on services.",
            func=lambda: clients.core_api.create_namespaced_service(
                namespace=namespace, body=desired, _request_timeout=request_timeout_seconds
            ),
        )

    # cluster IP and node ports are allocated by the API server; only ports are owned here
    existing.spec.ports = desired.spec.ports
    logger.info("updating Service %s/%s", namespace, name)
    return cluster_call(
        operation=f"update Service '{namespace}/{name}'",
        hint="Retry the reconcile if the object changed concurrently.",
        func=lambda: clients.core_api.replace_namespaced_service(
            name=name, namespace=namespace, body=existing, _request_timeout=request_timeout_seconds
        ),
    )


def delete_if_exists(*, operation: str, func: Callable[[], object]) -> bool:
    try:
        func()
    except ApiException as error:
        if error.status == 404:
            return False
        raise ClusterObjectError(
            _format_api_exception_message(
                operation=operation,
                hint="Verify RBAC allows delete on this resource.",
                error=error,
            ),
            status=error.status,
        ) from error
    return True


def scale_down_deployment(
    clients: KubernetesClients,
    namespace: str,
    name: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float = 1,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> None:
    """Scale a deployment to zero replicas and wait for its pods to be gone.

    A missing deployment is treated as already scaled down.
    """

    def read() -> client.V1Deployment | None:
        return read_or_none(
            operation=f"get Deployment '{namespace}/{name}'",
            hint="Verify RBAC allows get on deployments.",
            func=lambda: clients.apps_api.read_namespaced_deployment(
                name=name, namespace=namespace, _request_timeout=request_timeout_seconds
            ),
        )

    deployment = read()
    if deployment is None:
        return

    if deployment.spec is None or deployment.spec.replicas != 0:
        logger.info("scaling Deployment %s/%s to zero", namespace, name)
        cluster_call(
            operation=f"scale Deployment '{namespace}/{name}' to zero",
            hint="Verify RBAC allows patch on deployments/scale.",
            func=lambda: clients.apps_api.patch_namespaced_deployment_scale(
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": 0}},
                _request_timeout=request_timeout_seconds,
            ),
        )

    deadline = time.time() + timeout_seconds
    while True:
        current = read()
        if current is None or not _status_replicas(current):
            return
        if time.time() >= deadline:
            raise DeploymentTimeoutError(
                f"deployment {namespace}/{name} still has {_status_replicas(current)} replicas "
                f"after {timeout_seconds}s"
            )
        logger.debug("waiting for Deployment %s/%s to scale down", namespace, name)
        time.sleep(poll_interval_seconds)


def wait_for_deployment_ready(
    clients: KubernetesClients,
    namespace: str,
    name: str,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float = 1,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> None:
    deadline = time.time() + timeout_seconds
    last_ready = 0
    while time.time() < deadline:
        deployment = read_or_none(
            operation=f"get Deployment '{namespace}/{name}'",
            hint="Verify RBAC allows get on deployments.",
            func=lambda: clients.apps_api.read_namespaced_deployment(
                name=name, namespace=namespace, _request_timeout=request_timeout_seconds
            ),
        )
        if deployment is not None:
            desired = deployment.spec.replicas if deployment.spec and deployment.spec.replicas is not None else 1
            last_ready = (deployment.status.ready_replicas or 0) if deployment.status else 0
            if last_ready >= desired:
                return
        time.sleep(poll_interval_seconds)

    raise DeploymentTimeoutError(
        f"deployment {namespace}/{name} did not become ready in time (ready replicas={last_ready})"
    )


def read_or_none(*, operation: str, hint: str, func: Callable[[], T]) -> T | None:
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            return None
        raise ClusterObjectError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            status=error.status,
        ) from error


def cluster_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise ClusterObjectError(
            _format_api_exception_message(operation=operation, hint=hint, error=error),
            status=error.status,
        ) from error


def _status_replicas(deployment: client.V1Deployment) -> int:
    if deployment.status is None:
        return 0
    return deployment.status.replicas or 0


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason}). {hint}"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
