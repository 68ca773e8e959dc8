from __future__ import annotations

import hashlib
import logging
import uuid

from kubernetes import client
import yaml

from .config import ProvisionerConfig
from .history import ProbeHistoryStore
from .integrity import ACCESS_KEY_KEY, SECRET_KEY_KEY, IntegrityProtocol, secret_fingerprint, secret_keys
from .k8s import (
    ClusterObjectError,
    KubernetesClients,
    build_volume,
    cluster_call,
    ensure_config_map,
    ensure_deployment,
    ensure_secret,
    ensure_service,
    read_or_none,
    scale_down_deployment,
    wait_for_deployment_ready,
)
from .migration import MigrationDecision, authorize, decide
from .models import DeployOptions, GatewayStore, MountState
from .probe import ProbeWorkloadRunner
from .registry import (
    ImageRewriter,
    RegistryConfig,
    ensure_private_registry_secret,
    image_pull_secrets,
    image_rewriter_for,
)

logger = logging.getLogger(__name__)

GATEWAY_NAME = "kotsadm-fs-minio"
GATEWAY_CONFIG_MAP_NAME = GATEWAY_NAME
GATEWAY_SECRET_NAME = "kotsadm-fs-minio-creds"
GATEWAY_DEPLOYMENT_NAME = GATEWAY_NAME
GATEWAY_SERVICE_NAME = GATEWAY_NAME
GATEWAY_CONTAINER_NAME = "minio"
GATEWAY_SERVICE_PORT = 9000
GATEWAY_PROVIDER = "aws"
GATEWAY_BUCKET_NAME = "velero"
GATEWAY_REGION = "minio"
GATEWAY_ACCESS_KEY = "kotsadm"
SECRET_CHECKSUM_ANNOTATION = "kots.io/fs-minio-creds-secret-checksum"


class GatewayReconciler:
    """Keeps the S3 gateway for a filesystem mount deployed.

    Every ``deploy`` call re-checks who owns the mount before touching it; a
    mount written by other credentials is only reset when the caller passes
    ``force_reset``.
    """

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: ProvisionerConfig,
        integrity: IntegrityProtocol,
        registry_config: RegistryConfig | None = None,
        image_rewriter: ImageRewriter | None = None,
    ) -> None:
        self.clients = clients
        self.config = config
        self.integrity = integrity
        self.registry_config = registry_config or RegistryConfig()
        self.image_rewriter = image_rewriter or image_rewriter_for(self.registry_config)

    @classmethod
    def from_clients(
        cls,
        clients: KubernetesClients,
        config: ProvisionerConfig,
        *,
        registry_config: RegistryConfig | None = None,
        history: ProbeHistoryStore | None = None,
    ) -> GatewayReconciler:
        registry_config = registry_config or RegistryConfig()
        runner = ProbeWorkloadRunner(
            core_api=clients.core_api,
            timeout_seconds=config.probe_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
            request_timeout_seconds=config.request_timeout_seconds,
        )
        rewriter = image_rewriter_for(registry_config)
        integrity = IntegrityProtocol(
            runner=runner,
            probe_image=rewriter(config.probe_image),
            image_pull_secrets=tuple(ref.name for ref in image_pull_secrets(registry_config)),
            run_as_user=config.run_as_user,
            history=history,
        )
        return cls(
            clients=clients,
            config=config,
            integrity=integrity,
            registry_config=registry_config,
            image_rewriter=rewriter,
        )

    def deploy(self, options: DeployOptions, *, wait_for_ready: bool = False) -> MigrationDecision:
        namespace = options.namespace
        # the gateway can be deployed before anything else exists in the namespace (e.g. disaster recovery)
        ensure_private_registry_secret(
            self.clients,
            namespace,
            self.registry_config,
            request_timeout_seconds=self.config.request_timeout_seconds,
        )

        check = self.integrity.check(options)
        decision = decide(check, self._read_secret(namespace))
        logger.info("mount %s is %s: %s", options.file_system_config.mount_path, decision.state.value, decision.reason)
        authorize(decision, options.file_system_config, force_reset=options.force_reset)

        if decision.requires_reset:
            self.integrity.reset(options)
        if decision.requires_reset or decision.state is MountState.UNCONFIGURED:
            # a running gateway would keep serving config cached from the previous mount state
            scale_down_deployment(
                self.clients,
                namespace,
                GATEWAY_DEPLOYMENT_NAME,
                timeout_seconds=self.config.scale_down_timeout_seconds,
                poll_interval_seconds=self.config.poll_interval_seconds,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )

        ensure_config_map(
            self.clients,
            namespace,
            self.config_map_resource(options),
            request_timeout_seconds=self.config.request_timeout_seconds,
        )
        secret, created = ensure_secret(
            self.clients,
            namespace,
            self.secret_resource,
            name=GATEWAY_SECRET_NAME,
            request_timeout_seconds=self.config.request_timeout_seconds,
        )
        if created:
            logger.info("generated new gateway credentials in %s", namespace)
        self.integrity.mark(options, secret_fingerprint(secret))

        ensure_deployment(
            self.clients,
            namespace,
            self.deployment_resource(options, secret_checksum(secret)),
            merge_deployment,
            request_timeout_seconds=self.config.request_timeout_seconds,
        )
        ensure_service(
            self.clients,
            namespace,
            self.service_resource(),
            request_timeout_seconds=self.config.request_timeout_seconds,
        )

        if wait_for_ready:
            wait_for_deployment_ready(
                self.clients,
                namespace,
                GATEWAY_DEPLOYMENT_NAME,
                timeout_seconds=self.config.probe_timeout_seconds,
                poll_interval_seconds=self.config.poll_interval_seconds,
                request_timeout_seconds=self.config.request_timeout_seconds,
            )
        return decision

    def validate(self, options: DeployOptions) -> tuple[bool, bool]:
        """Run only the check probe; returns ``(has_existing_state, writable)``."""
        check = self.integrity.check(options)
        return check.has_existing_state, check.writable

    def describe_store(self, namespace: str) -> GatewayStore:
        secret = cluster_call(
            operation=f"get Secret '{namespace}/{GATEWAY_SECRET_NAME}'",
            hint="Deploy the filesystem gateway first.",
            func=lambda: self.clients.core_api.read_namespaced_secret(
                name=GATEWAY_SECRET_NAME, namespace=namespace, _request_timeout=self.config.request_timeout_seconds
            ),
        )
        service = cluster_call(
            operation=f"get Service '{namespace}/{GATEWAY_SERVICE_NAME}'",
            hint="Deploy the filesystem gateway first.",
            func=lambda: self.clients.core_api.read_namespaced_service(
                name=GATEWAY_SERVICE_NAME, namespace=namespace, _request_timeout=self.config.request_timeout_seconds
            ),
        )
        access_key, secret_key = secret_keys(secret)
        port = service.spec.ports[0].port if service.spec and service.spec.ports else GATEWAY_SERVICE_PORT
        return GatewayStore(
            access_key_id=access_key,
            secret_access_key=secret_key,
            endpoint=f"http://{GATEWAY_SERVICE_NAME}.{namespace}:{port}",
            object_store_cluster_ip=(service.spec.cluster_ip if service.spec else None) or "",
            region=GATEWAY_REGION,
        )

    def config_map_resource(self, options: DeployOptions) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=client.V1ObjectMeta(name=GATEWAY_CONFIG_MAP_NAME),
            data=options.file_system_config.to_config_map_data(),
        )

    def secret_resource(self) -> client.V1Secret:
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=client.V1ObjectMeta(name=GATEWAY_SECRET_NAME),
            string_data={
                ACCESS_KEY_KEY: GATEWAY_ACCESS_KEY,
                SECRET_KEY_KEY: str(uuid.uuid4()),
            },
        )

    def deployment_resource(self, options: DeployOptions, checksum: str) -> client.V1Deployment:
        security_context = None
        if not options.is_openshift:
            security_context = client.V1PodSecurityContext(
                run_as_user=self.config.run_as_user,
                fs_group=self.config.run_as_user,
            )

        env = [
            client.V1EnvVar(name="MINIO_UPDATE", value="off"),
            _secret_env(ACCESS_KEY_KEY),
            _secret_env(SECRET_KEY_KEY),
        ]
        labels = {"app": GATEWAY_NAME}

        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=client.V1ObjectMeta(name=GATEWAY_DEPLOYMENT_NAME),
            spec=client.V1DeploymentSpec(
                replicas=1,
                selector=client.V1LabelSelector(match_labels=labels),
                strategy=client.V1DeploymentStrategy(type="Recreate"),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(
                        labels=dict(labels),
                        annotations={SECRET_CHECKSUM_ANNOTATION: checksum},
                    ),
                    spec=client.V1PodSpec(
                        security_context=security_context,
                        image_pull_secrets=image_pull_secrets(self.registry_config) or None,
                        containers=[
                            client.V1Container(
                                name=GATEWAY_CONTAINER_NAME,
                                image=self.image_rewriter(self.config.gateway_image),
                                image_pull_policy="IfNotPresent",
                                ports=[client.V1ContainerPort(name="http", container_port=GATEWAY_SERVICE_PORT)],
                                env=env,
                                volume_mounts=[client.V1VolumeMount(name="data", mount_path="/data")],
                                args=["--quiet", "server", "data"],
                                liveness_probe=_health_probe("/minio/health/live"),
                                readiness_probe=_health_probe("/minio/health/ready"),
                            )
                        ],
                        volumes=[build_volume("data", options.file_system_config)],
                    ),
                ),
            ),
        )

    def service_resource(self) -> client.V1Service:
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=client.V1ObjectMeta(name=GATEWAY_SERVICE_NAME),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                selector={"app": GATEWAY_NAME},
                ports=[
                    client.V1ServicePort(
                        protocol="TCP",
                        port=GATEWAY_SERVICE_PORT,
                        target_port=GATEWAY_SERVICE_PORT,
                    )
                ],
            ),
        )

    def _read_secret(self, namespace: str) -> client.V1Secret | None:
        return read_or_none(
            operation=f"get Secret '{namespace}/{GATEWAY_SECRET_NAME}'",
            hint="Verify RBAC allows get on secrets.",
            func=lambda: self.clients.core_api.read_namespaced_secret(
                name=GATEWAY_SECRET_NAME,
                namespace=namespace,
                _request_timeout=self.config.request_timeout_seconds,
            ),
        )


def merge_deployment(existing: client.V1Deployment, desired: client.V1Deployment) -> client.V1Deployment:
    """Copy only the fields the reconciler owns onto the live deployment."""
    existing_pod_spec = existing.spec.template.spec
    if not existing_pod_spec.containers:
        return desired

    existing.spec.replicas = desired.spec.replicas

    template_metadata = existing.spec.template.metadata
    if template_metadata is None:
        template_metadata = client.V1ObjectMeta()
        existing.spec.template.metadata = template_metadata
    if template_metadata.annotations is None:
        template_metadata.annotations = {}
    template_metadata.annotations[SECRET_CHECKSUM_ANNOTATION] = desired.spec.template.metadata.annotations[
        SECRET_CHECKSUM_ANNOTATION
    ]

    desired_container = desired.spec.template.spec.containers[0]
    for container in existing_pod_spec.containers:
        if container.name == GATEWAY_CONTAINER_NAME:
            container.image = desired_container.image
            container.liveness_probe = desired_container.liveness_probe
            container.readiness_probe = desired_container.readiness_probe
            container.env = desired_container.env
            break
    else:
        raise ClusterObjectError(f"failed to find {GATEWAY_CONTAINER_NAME} container in deployment")

    existing_pod_spec.volumes = desired.spec.template.spec.volumes
    return existing


def secret_checksum(secret: client.V1Secret) -> str:
    access_key, secret_key = secret_keys(secret)
    document = {
        "name": GATEWAY_SECRET_NAME,
        "data": {ACCESS_KEY_KEY: access_key, SECRET_KEY_KEY: secret_key},
    }
    return hashlib.md5(yaml.safe_dump(document, sort_keys=True).encode()).hexdigest()


def _secret_env(key: str) -> client.V1EnvVar:
    return client.V1EnvVar(
        name=key,
        value_from=client.V1EnvVarSource(
            secret_key_ref=client.V1SecretKeySelector(name=GATEWAY_SECRET_NAME, key=key),
        ),
    )


def _health_probe(path: str) -> client.V1Probe:
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(path=path, port=GATEWAY_SERVICE_PORT),
        initial_delay_seconds=5,
        period_seconds=20,
    )
