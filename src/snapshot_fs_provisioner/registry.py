from __future__ import annotations

from dataclasses import dataclass
import base64
import json
import logging
from typing import Callable

from kubernetes import client

from .k8s import DEFAULT_REQUEST_TIMEOUT_SECONDS, KubernetesClients, cluster_call, read_or_none

logger = logging.getLogger(__name__)

PRIVATE_REGISTRY_SECRET_NAME = "kotsadm-private-registry"

ImageRewriter = Callable[[str], str]


@dataclass(frozen=True)
class RegistryConfig:
    """Private registry used by airgapped installs. Empty endpoint means public images."""

    endpoint: str = ""
    namespace: str = ""
    username: str = ""
    password: str = ""

    @property
    def is_private(self) -> bool:
        return bool(self.endpoint.strip())


def rewrite_image(image: str, registry_config: RegistryConfig) -> str:
    """Point ``image`` at the private registry, keeping its name and tag."""
    if not registry_config.is_private:
        return image

    name_and_tag = image.rsplit("/", 1)[-1]
    prefix = registry_config.endpoint.strip().rstrip("/")
    namespace = registry_config.namespace.strip().strip("/")
    if namespace:
        prefix = f"{prefix}/{namespace}"
    return f"{prefix}/{name_and_tag}"


def image_rewriter_for(registry_config: RegistryConfig) -> ImageRewriter:
    return lambda image: rewrite_image(image, registry_config)


def image_pull_secrets(registry_config: RegistryConfig) -> list[client.V1LocalObjectReference]:
    if not registry_config.is_private or not registry_config.username:
        return []
    return [client.V1LocalObjectReference(name=PRIVATE_REGISTRY_SECRET_NAME)]


def ensure_private_registry_secret(
    clients: KubernetesClients,
    namespace: str,
    registry_config: RegistryConfig,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> None:
    if not registry_config.is_private or not registry_config.username:
        return

    desired = _pull_secret_resource(namespace, registry_config)
    existing = read_or_none(
        operation=f"get Secret '{namespace}/{PRIVATE_REGISTRY_SECRET_NAME}'",
        hint="Verify RBAC allows get on secrets.",
        func=lambda: clients.core_api.read_namespaced_secret(
            name=PRIVATE_REGISTRY_SECRET_NAME, namespace=namespace, _request_timeout=request_timeout_seconds
        ),
    )
    if existing is None:
        logger.info("creating registry pull secret %s/%s", namespace, PRIVATE_REGISTRY_SECRET_NAME)
        cluster_call(
            operation=f"create Secret '{namespace}/{PRIVATE_REGISTRY_SECRET_NAME}'",
            hint="Verify RBAC allows create on secrets.",
            func=lambda: clients.core_api.create_namespaced_secret(
                namespace=namespace, body=desired, _request_timeout=request_timeout_seconds
            ),
        )
        return

    existing.data = desired.data
    existing.type = desired.type
    cluster_call(
        operation=f"update Secret '{namespace}/{PRIVATE_REGISTRY_SECRET_NAME}'",
        hint="Retry the reconcile if the object changed concurrently.",
        func=lambda: clients.core_api.replace_namespaced_secret(
            name=PRIVATE_REGISTRY_SECRET_NAME,
            namespace=namespace,
            body=existing,
            _request_timeout=request_timeout_seconds,
        ),
    )


def _pull_secret_resource(namespace: str, registry_config: RegistryConfig) -> client.V1Secret:
    host = registry_config.endpoint.strip().split("/", 1)[0]
    auth = base64.b64encode(f"{registry_config.username}:{registry_config.password}".encode()).decode()
    docker_config = {
        "auths": {
            host: {
                "username": registry_config.username,
                "password": registry_config.password,
                "auth": auth,
            }
        }
    }
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(name=PRIVATE_REGISTRY_SECRET_NAME, namespace=namespace),
        type="kubernetes.io/dockerconfigjson",
        data={".dockerconfigjson": base64.b64encode(json.dumps(docker_config).encode()).decode()},
    )
