from __future__ import annotations

from dataclasses import dataclass

from kubernetes import client

from .integrity import secret_fingerprint
from .models import CheckProbeOutput, FileSystemConfig, MountState


class ResetRequiredError(RuntimeError):
    """The mount belongs to another gateway instance and may only be reused after a forced reset.

    Re-run the deploy with ``force_reset=True`` to confirm the reset.
    """

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.message = message
        self.path = path


@dataclass(frozen=True)
class MigrationDecision:
    state: MountState
    reason: str

    @property
    def requires_reset(self) -> bool:
        return self.state is MountState.MIGRATION_REQUIRED


def decide(check: CheckProbeOutput, cluster_secret: client.V1Secret | None) -> MigrationDecision:
    if not check.has_existing_state:
        return MigrationDecision(MountState.UNCONFIGURED, "mount holds no gateway state")

    if not check.fingerprint:
        return MigrationDecision(
            MountState.MIGRATION_REQUIRED,
            "mount holds gateway state without a credentials fingerprint",
        )

    if cluster_secret is None:
        return MigrationDecision(
            MountState.MIGRATION_REQUIRED,
            "mount holds gateway state but no gateway credentials exist in the cluster",
        )

    if secret_fingerprint(cluster_secret) == check.fingerprint:
        return MigrationDecision(MountState.CONSISTENT, "mount fingerprint matches the gateway credentials")

    return MigrationDecision(
        MountState.MIGRATION_REQUIRED,
        "mount fingerprint does not match the gateway credentials",
    )


def authorize(decision: MigrationDecision, file_system_config: FileSystemConfig, *, force_reset: bool) -> None:
    """Raise ``ResetRequiredError`` when a reset is needed and was not confirmed."""
    if decision.requires_reset and not force_reset:
        raise ResetRequiredError(
            reset_warning_message(file_system_config),
            path=file_system_config.mount_path,
        )


def reset_warning_message(file_system_config: FileSystemConfig) -> str:
    return (
        f"The {file_system_config.mount_path} directory was previously configured by a different minio instance.\n"
        "Proceeding will re-configure it to be used only by the minio instance we deploy to configure the "
        "file system, and any other minio instance using this location will no longer have access.\n"
        "If you are attempting to fully restore a prior installation, such as a disaster recovery scenario, "
        "this action is expected."
    )
