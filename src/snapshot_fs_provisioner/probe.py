from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
import time
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException

from .k8s import ClusterObjectError, build_volume, cluster_call
from .models import FileSystemConfig, ProbeRun

logger = logging.getLogger(__name__)

PROBE_APP_LABEL = "kotsadm-fs-minio"
PROBE_TAG_LABEL = "check"
PROBE_CONTAINER_NAME = "fs-minio"
PROBE_VOLUME_NAME = "fs"
PROBE_MOUNT_PATH = "/fs"
# a missing path fails the mount instead of being created empty
HOST_PATH_TYPE = "Directory"
TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})
EVENT_OUTPUT_MARKER = "Output:"


class ActionableError(RuntimeError):
    """Diagnostic text taken from a failed probe, meant to be shown to the operator as-is."""

    def __init__(self, message: str, *, pod_name: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.pod_name = pod_name


class HostPathNotFoundError(RuntimeError):
    """Raised when the configured host path does not exist on the node."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path


class ProbeTimeoutError(TimeoutError):
    def __init__(self, message: str, *, pod_name: str) -> None:
        super().__init__(message)
        self.pod_name = pod_name


class ProbeError(RuntimeError):
    """Raised when a probe ran but did not report a usable result."""

    def __init__(self, message: str, *, pod_name: str) -> None:
        super().__init__(message)
        self.pod_name = pod_name


@dataclass(frozen=True)
class ProbeSpec:
    namespace: str
    tag: str
    command: tuple[str, ...]
    file_system_config: FileSystemConfig
    image: str
    is_openshift: bool = False
    args: tuple[str, ...] = ()
    image_pull_secrets: tuple[str, ...] = ()
    run_as_user: int = 1001


class ProbeWorkloadRunner:
    """Runs one short-lived pod against the mount and collects its output.

    The pod is the only channel to the mount: its stdout carries the result
    and its phase tells whether it finished. Pods are removed by ``cleanup``
    only after the caller has accepted the result, so failed probes stay
    around for inspection.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        timeout_seconds: float = 120,
        poll_interval_seconds: float = 1,
        request_timeout_seconds: int = 20,
    ) -> None:
        self.core_api = core_api
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.request_timeout_seconds = request_timeout_seconds

    def run(self, spec: ProbeSpec) -> ProbeRun:
        pod_name = probe_pod_name(spec.tag)
        pod = build_probe_pod(spec, pod_name)
        self._create_pod(namespace=spec.namespace, pod=pod)
        logger.info("started %s probe pod %s/%s", spec.tag, spec.namespace, pod_name)

        try:
            phase = self._wait_for_terminal_phase(namespace=spec.namespace, pod_name=pod_name)
        except ProbeTimeoutError as error:
            diagnosed = self._diagnose_timeout(spec, pod_name, error)
            if diagnosed is error:
                raise
            raise diagnosed from error

        logs = self._read_logs(namespace=spec.namespace, pod_name=pod_name)
        logger.info("%s probe pod %s/%s finished with phase %s", spec.tag, spec.namespace, pod_name, phase)
        return ProbeRun(namespace=spec.namespace, kind=spec.tag, pod_name=pod_name, phase=phase, logs=logs)

    def read_result(self, run: ProbeRun) -> dict[str, Any]:
        payload = parse_probe_output(run.logs)
        if payload is not None:
            return payload

        diagnostic = run.logs.strip()
        if run.phase == "Failed" and diagnostic:
            raise ActionableError(diagnostic, pod_name=run.pod_name)
        if not diagnostic:
            raise ProbeError(f"no logs found for probe pod {run.pod_name}", pod_name=run.pod_name)
        raise ProbeError(
            f"probe pod {run.pod_name} did not report a result, please check its logs for more details",
            pod_name=run.pod_name,
        )

    def cleanup(self, spec: ProbeSpec) -> None:
        """Remove every pod of this probe kind, including leftovers from earlier runs."""
        selector = f"app={PROBE_APP_LABEL},{PROBE_TAG_LABEL}={spec.tag}"
        try:
            self.core_api.delete_collection_namespaced_pod(
                namespace=spec.namespace,
                label_selector=selector,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as error:
            logger.warning("failed to delete %s probe pods in %s: %s", spec.tag, spec.namespace, error.reason)

    def _create_pod(self, *, namespace: str, pod: client.V1Pod) -> None:
        name = pod.metadata.name
        try:
            self.core_api.create_namespaced_pod(
                namespace=namespace, body=pod, _request_timeout=self.request_timeout_seconds
            )
        except ApiException as error:
            if error.status != 409:
                raise ClusterObjectError(
                    f"failed to create probe pod {namespace}/{name}: API status {error.status} ({error.reason})",
                    status=error.status,
                ) from error
            cluster_call(
                operation=f"delete stale probe pod '{namespace}/{name}'",
                hint="Verify RBAC allows delete on pods.",
                func=lambda: self.core_api.delete_namespaced_pod(
                    name=name,
                    namespace=namespace,
                    grace_period_seconds=0,
                    body=client.V1DeleteOptions(),
                    _request_timeout=self.request_timeout_seconds,
                ),
            )
            cluster_call(
                operation=f"create probe pod '{namespace}/{name}'",
                hint="Verify RBAC allows create on pods.",
                func=lambda: self.core_api.create_namespaced_pod(
                    namespace=namespace, body=pod, _request_timeout=self.request_timeout_seconds
                ),
            )

    def _wait_for_terminal_phase(self, *, namespace: str, pod_name: str) -> str:
        deadline = time.time() + self.timeout_seconds
        last_phase = "Unknown"
        last_hint: str | None = None
        while time.time() < deadline:
            pod = cluster_call(
                operation=f"get probe pod '{namespace}/{pod_name}'",
                hint="Verify RBAC allows get on pods.",
                func=lambda: self.core_api.read_namespaced_pod(
                    name=pod_name, namespace=namespace, _request_timeout=self.request_timeout_seconds
                ),
            )
            phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
            last_phase = phase
            pending_hint = _extract_pending_hint(pod)
            if pending_hint:
                last_hint = pending_hint
            if phase in TERMINAL_PHASES:
                return phase
            logger.debug("probe pod %s/%s is %s", namespace, pod_name, phase)
            time.sleep(self.poll_interval_seconds)

        detail = f"last observed phase={last_phase}"
        if last_hint:
            detail = f"{detail}; {last_hint}"
        raise ProbeTimeoutError(
            f"probe pod {namespace}/{pod_name} did not complete in time ({detail})",
            pod_name=pod_name,
        )

    def _read_logs(self, *, namespace: str, pod_name: str) -> str:
        return cluster_call(
            operation=f"read logs of probe pod '{namespace}/{pod_name}'",
            hint="Verify RBAC allows get on pods/log.",
            func=lambda: self.core_api.read_namespaced_pod_log(
                name=pod_name,
                namespace=namespace,
                container=PROBE_CONTAINER_NAME,
                _request_timeout=self.request_timeout_seconds,
            ),
        ) or ""

    def _diagnose_timeout(self, spec: ProbeSpec, pod_name: str, error: ProbeTimeoutError) -> Exception:
        try:
            logs = self._read_logs(namespace=spec.namespace, pod_name=pod_name)
        except ClusterObjectError as log_error:
            logger.debug("no logs for timed out probe pod %s: %s", pod_name, log_error)
            logs = ""
        if logs.strip():
            return ActionableError(logs.strip(), pod_name=pod_name)

        try:
            events = self.core_api.list_namespaced_event(
                namespace=spec.namespace,
                field_selector=f"involvedObject.name={pod_name}",
                _request_timeout=self.request_timeout_seconds,
            ).items
        except ApiException as event_error:
            logger.debug("no events for timed out probe pod %s: %s", pod_name, event_error.reason)
            events = []

        for event in events or []:
            message = event.message or ""
            if spec.file_system_config.is_host_path and _is_missing_host_path(message):
                path = spec.file_system_config.host_path
                return HostPathNotFoundError(
                    f"The host path {path} does not exist on the node or is not a directory. "
                    f"Create it or choose another path. Details: {message}",
                    path=path,
                )
        for event in events or []:
            message = event.message or ""
            if EVENT_OUTPUT_MARKER in message:
                return ActionableError(message, pod_name=pod_name)

        return error


def build_probe_pod(spec: ProbeSpec, pod_name: str) -> client.V1Pod:
    security_context = None
    if not spec.is_openshift:
        # platform-assigned UIDs on OpenShift conflict with a fixed user
        security_context = client.V1PodSecurityContext(run_as_user=spec.run_as_user, fs_group=spec.run_as_user)

    pull_secrets = [client.V1LocalObjectReference(name=name) for name in spec.image_pull_secrets] or None

    return client.V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=client.V1ObjectMeta(
            name=pod_name,
            namespace=spec.namespace,
            labels={
                "app": PROBE_APP_LABEL,
                PROBE_TAG_LABEL: spec.tag,
            },
        ),
        spec=client.V1PodSpec(
            security_context=security_context,
            restart_policy="Never",
            image_pull_secrets=pull_secrets,
            volumes=[build_volume(PROBE_VOLUME_NAME, spec.file_system_config, host_path_type=HOST_PATH_TYPE)],
            containers=[
                client.V1Container(
                    name=PROBE_CONTAINER_NAME,
                    image=spec.image,
                    image_pull_policy="IfNotPresent",
                    command=list(spec.command),
                    args=list(spec.args) or None,
                    volume_mounts=[client.V1VolumeMount(name=PROBE_VOLUME_NAME, mount_path=PROBE_MOUNT_PATH)],
                    resources=client.V1ResourceRequirements(
                        limits={"cpu": "100m", "memory": "100Mi"},
                        requests={"cpu": "50m", "memory": "50Mi"},
                    ),
                )
            ],
        ),
    )


def parse_probe_output(logs: str) -> dict[str, Any] | None:
    """Return the first line of ``logs`` that is a JSON object, ignoring everything else."""
    for line in logs.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            payload = json.loads(stripped)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def probe_pod_name(tag: str) -> str:
    return _sanitize_dns_label(f"{tag}-{int(time.time())}", max_length=63)


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "fs-probe"


def _is_missing_host_path(message: str) -> bool:
    lowered = message.lower()
    if "hostpath" not in lowered and "host path" not in lowered:
        return False
    return "does not exist" in lowered or "not a directory" in lowered or "type check failed" in lowered


def _extract_pending_hint(pod: object) -> str | None:
    pod_status = getattr(pod, "status", None)
    if pod_status is None:
        return None

    conditions = getattr(pod_status, "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "PodScheduled" and getattr(condition, "status", None) == "False":
            reason = getattr(condition, "reason", None) or "Unschedulable"
            message = (getattr(condition, "message", None) or "").strip()
            return f"pod unschedulable ({reason}: {message})" if message else f"pod unschedulable ({reason})"

    for attribute in ("init_container_statuses", "container_statuses"):
        container_statuses = getattr(pod_status, attribute, None) or []
        for container_status in container_statuses:
            state = getattr(container_status, "state", None)
            waiting_state = getattr(state, "waiting", None) if state is not None else None
            if waiting_state is None:
                continue
            reason = getattr(waiting_state, "reason", None) or "ContainerWaiting"
            message = (getattr(waiting_state, "message", None) or "").strip()
            if message:
                return f"container waiting ({reason}: {message})"
            return f"container waiting ({reason})"

    return None
