from __future__ import annotations

from datetime import UTC, datetime
import base64
import hashlib
import logging

from kubernetes import client
from kubernetes.client import ApiException

from .history import ProbeHistoryStore
from .models import CheckProbeOutput, DeployOptions, ProbeKind, ProbeRecord, StatusProbeOutput
from .probe import (
    PROBE_APP_LABEL,
    PROBE_TAG_LABEL,
    ActionableError,
    HostPathNotFoundError,
    ProbeError,
    ProbeSpec,
    ProbeTimeoutError,
    ProbeWorkloadRunner,
)

logger = logging.getLogger(__name__)

ACCESS_KEY_KEY = "MINIO_ACCESS_KEY"
SECRET_KEY_KEY = "MINIO_SECRET_KEY"

CHECK_TAG = "kotsadm-fs-minio-check"
RESET_TAG = "kotsadm-fs-minio-reset"
MARK_TAG = "kotsadm-fs-minio-keys-sha"
PROBE_TAGS = (CHECK_TAG, RESET_TAG, MARK_TAG)

_HISTORY_KINDS = {CHECK_TAG: ProbeKind.CHECK.value, RESET_TAG: ProbeKind.RESET.value, MARK_TAG: ProbeKind.MARK.value}
_PROBE_FAILURES = (ActionableError, HostPathNotFoundError, ProbeError, ProbeTimeoutError)


def fingerprint(access_key: str, secret_key: str) -> str:
    return hashlib.sha256(f"{access_key},{secret_key}".encode()).hexdigest()


def secret_keys(secret: client.V1Secret) -> tuple[str, str]:
    data = secret.data or {}
    string_data = getattr(secret, "string_data", None) or {}

    def _value(key: str) -> str:
        if key in data and data[key] is not None:
            return base64.b64decode(data[key]).decode()
        return string_data.get(key, "")

    return _value(ACCESS_KEY_KEY), _value(SECRET_KEY_KEY)


def secret_fingerprint(secret: client.V1Secret) -> str:
    access_key, secret_key = secret_keys(secret)
    return fingerprint(access_key, secret_key)


class IntegrityProtocol:
    """Check, reset and mark probes that guard ownership of a gateway mount."""

    def __init__(
        self,
        *,
        runner: ProbeWorkloadRunner,
        probe_image: str,
        image_pull_secrets: tuple[str, ...] = (),
        run_as_user: int = 1001,
        history: ProbeHistoryStore | None = None,
    ) -> None:
        self.runner = runner
        self.probe_image = probe_image
        self.image_pull_secrets = image_pull_secrets
        self.run_as_user = run_as_user
        self.history = history

    def check(self, options: DeployOptions) -> CheckProbeOutput:
        spec = self._spec(options, CHECK_TAG, ("/fs-minio-check.sh",))
        payload, pod_name = self._run(spec)
        output = CheckProbeOutput.from_payload(payload)
        # the result is usable, so the pod is no longer needed for debugging
        self.runner.cleanup(spec)
        self._record(
            spec,
            pod_name=pod_name,
            status="success",
            fingerprint=output.fingerprint or None,
            message=f"hasMinioConfig={output.has_existing_state} writable={output.writable}",
        )
        return output

    def reset(self, options: DeployOptions) -> None:
        spec = self._spec(options, RESET_TAG, ("/fs-minio-reset.sh",))
        self._run_status_probe(spec, failure="failed to reset")
        logger.info("reset mount %s for namespace %s", options.file_system_config.mount_path, options.namespace)

    def mark(self, options: DeployOptions, keys_fingerprint: str) -> None:
        spec = self._spec(options, MARK_TAG, ("/fs-minio-keys-sha.sh",), args=(keys_fingerprint,))
        self._run_status_probe(spec, failure="failed to write keys sha", fingerprint=keys_fingerprint)

    def collect_errors(self, namespace: str) -> dict[str, str]:
        """Join the event messages of the newest pod of each probe kind still present."""
        result: dict[str, str] = {}
        for tag in PROBE_TAGS:
            try:
                pods = self.runner.core_api.list_namespaced_pod(
                    namespace=namespace,
                    label_selector=f"app={PROBE_APP_LABEL},{PROBE_TAG_LABEL}={tag}",
                    _request_timeout=self.runner.request_timeout_seconds,
                ).items
            except ApiException as error:
                if error.status != 404:
                    logger.error("failed to list %s pods: %s", tag, error.reason)
                continue

            if not pods:
                continue
            latest = max(pods, key=_created_at)

            try:
                events = self.runner.core_api.list_namespaced_event(
                    namespace=namespace,
                    field_selector=f"involvedObject.name={latest.metadata.name}",
                    _request_timeout=self.runner.request_timeout_seconds,
                ).items
            except ApiException as error:
                if error.status != 404:
                    logger.error("failed to list %s events: %s", latest.metadata.name, error.reason)
                continue

            messages = [event.message for event in events or [] if event.message]
            if messages:
                result[tag] = "\n".join(messages)

        return result

    def _run_status_probe(self, spec: ProbeSpec, *, failure: str, fingerprint: str | None = None) -> None:
        payload, pod_name = self._run(spec, fingerprint=fingerprint)
        output = StatusProbeOutput.from_payload(payload)
        if not output.success:
            message = f"{failure}, please check {pod_name} pod logs for more details"
            self._record(spec, pod_name=pod_name, status="failed", fingerprint=fingerprint, message=message)
            raise ProbeError(message, pod_name=pod_name)

        self.runner.cleanup(spec)
        self._record(spec, pod_name=pod_name, status="success", fingerprint=fingerprint)

    def _run(self, spec: ProbeSpec, *, fingerprint: str | None = None) -> tuple[dict, str]:
        pod_name = ""
        try:
            run = self.runner.run(spec)
            pod_name = run.pod_name
            return self.runner.read_result(run), pod_name
        except _PROBE_FAILURES as error:
            self._record(
                spec,
                pod_name=getattr(error, "pod_name", None) or pod_name,
                status="failed",
                fingerprint=fingerprint,
                message=str(error),
            )
            raise

    def _spec(
        self,
        options: DeployOptions,
        tag: str,
        command: tuple[str, ...],
        *,
        args: tuple[str, ...] = (),
    ) -> ProbeSpec:
        return ProbeSpec(
            namespace=options.namespace,
            tag=tag,
            command=command,
            args=args,
            file_system_config=options.file_system_config,
            image=self.probe_image,
            is_openshift=options.is_openshift,
            image_pull_secrets=self.image_pull_secrets,
            run_as_user=self.run_as_user,
        )

    def _record(
        self,
        spec: ProbeSpec,
        *,
        pod_name: str,
        status: str,
        fingerprint: str | None = None,
        message: str = "",
    ) -> None:
        if self.history is None:
            return
        self.history.record(
            ProbeRecord(
                namespace=spec.namespace,
                kind=_HISTORY_KINDS[spec.tag],
                pod_name=pod_name,
                status=status,
                created_at=datetime.now(tz=UTC).replace(microsecond=0).isoformat(),
                fingerprint=fingerprint,
                message=message,
            )
        )


def _created_at(pod: client.V1Pod) -> datetime:
    created = pod.metadata.creation_timestamp
    if created is None:
        return datetime.min.replace(tzinfo=UTC)
    if created.tzinfo is None:
        return created.replace(tzinfo=UTC)
    return created
