from __future__ import annotations

import pytest
from kubernetes import client

from snapshot_fs_provisioner.integrity import fingerprint
from snapshot_fs_provisioner.migration import ResetRequiredError, authorize, decide
from snapshot_fs_provisioner.models import CheckProbeOutput, FileSystemConfig, MountState


def _check(*, has_state: bool, sha: str = "") -> CheckProbeOutput:
    return CheckProbeOutput(has_existing_state=has_state, fingerprint=sha, writable=True)


def _secret(access_key: str = "kotsadm", secret_key: str = "s3cret") -> client.V1Secret:
    return client.V1Secret(string_data={"MINIO_ACCESS_KEY": access_key, "MINIO_SECRET_KEY": secret_key})


def test_empty_mount_is_unconfigured_regardless_of_cluster_secret() -> None:
    assert decide(_check(has_state=False), None).state is MountState.UNCONFIGURED
    assert decide(_check(has_state=False), _secret()).state is MountState.UNCONFIGURED


def test_matching_fingerprint_is_consistent() -> None:
    decision = decide(_check(has_state=True, sha=fingerprint("kotsadm", "s3cret")), _secret())

    assert decision.state is MountState.CONSISTENT
    assert decision.requires_reset is False


@pytest.mark.parametrize(
    ("check", "secret"),
    [
        (_check(has_state=True), _secret()),
        (_check(has_state=True, sha=fingerprint("kotsadm", "s3cret")), None),
        (_check(has_state=True, sha=fingerprint("kotsadm", "other")), _secret()),
    ],
    ids=["legacy-state-without-fingerprint", "no-cluster-credentials", "foreign-credentials"],
)
def test_foreign_or_unmarked_state_requires_migration(check: CheckProbeOutput, secret: client.V1Secret | None) -> None:
    decision = decide(check, secret)

    assert decision.state is MountState.MIGRATION_REQUIRED
    assert decision.requires_reset is True


def test_authorize_without_force_reset_raises_with_mount_path() -> None:
    decision = decide(_check(has_state=True), _secret())

    with pytest.raises(ResetRequiredError, match="/backups directory was previously configured") as excinfo:
        authorize(decision, FileSystemConfig.for_host_path("/backups"), force_reset=False)

    assert excinfo.value.path == "/backups"


def test_authorize_allows_forced_reset_and_consistent_state() -> None:
    config = FileSystemConfig.for_nfs("/exports", "nfs.internal")

    authorize(decide(_check(has_state=True), _secret()), config, force_reset=True)
    authorize(decide(_check(has_state=False), None), config, force_reset=False)
