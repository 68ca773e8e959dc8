from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import Mapping

HOST_PATH_KEY = "HOSTPATH"
NFS_PATH_KEY = "NFS_PATH"
NFS_SERVER_KEY = "NFS_SERVER"


@dataclass(frozen=True)
class NFSConfig:
    path: str
    server: str


@dataclass(frozen=True)
class FileSystemConfig:
    """Mount descriptor: a node host path or an NFS export, never both."""

    host_path: str | None = None
    nfs: NFSConfig | None = None

    def __post_init__(self) -> None:
        if (self.host_path is None) == (self.nfs is None):
            raise ValueError("exactly one of host_path or nfs must be set")

    @classmethod
    def for_host_path(cls, path: str) -> FileSystemConfig:
        return cls(host_path=path)

    @classmethod
    def for_nfs(cls, path: str, server: str) -> FileSystemConfig:
        return cls(nfs=NFSConfig(path=path, server=server))

    @property
    def is_host_path(self) -> bool:
        return self.host_path is not None

    @property
    def mount_path(self) -> str:
        if self.host_path is not None:
            return self.host_path
        assert self.nfs is not None
        return self.nfs.path

    def to_config_map_data(self) -> dict[str, str]:
        if self.host_path is not None:
            return {HOST_PATH_KEY: self.host_path}
        assert self.nfs is not None
        return {NFS_PATH_KEY: self.nfs.path, NFS_SERVER_KEY: self.nfs.server}

    @classmethod
    def from_config_map_data(cls, data: Mapping[str, str] | None) -> FileSystemConfig | None:
        if not data:
            return None
        if HOST_PATH_KEY in data:
            return cls.for_host_path(data[HOST_PATH_KEY])
        if NFS_PATH_KEY in data:
            return cls.for_nfs(data[NFS_PATH_KEY], data.get(NFS_SERVER_KEY, ""))
        return None

    def to_json(self) -> str:
        if self.host_path is not None:
            payload: dict[str, object] = {"hostPath": self.host_path}
        else:
            assert self.nfs is not None
            payload = {"nfs": {"path": self.nfs.path, "server": self.nfs.server}}
        return json.dumps(payload, separators=(",", ":"))


@dataclass(frozen=True)
class DeployOptions:
    namespace: str
    file_system_config: FileSystemConfig
    is_openshift: bool = False
    force_reset: bool = False


class MountState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONSISTENT = "consistent"
    MIGRATION_REQUIRED = "migration-required"


class ProbeKind(str, Enum):
    CHECK = "check"
    RESET = "reset"
    MARK = "keys-sha"


@dataclass(frozen=True)
class CheckProbeOutput:
    has_existing_state: bool
    fingerprint: str
    writable: bool

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> CheckProbeOutput:
        return cls(
            has_existing_state=bool(payload.get("hasMinioConfig", False)),
            fingerprint=str(payload.get("minioKeysSHA") or ""),
            writable=bool(payload.get("writable", False)),
        )


@dataclass(frozen=True)
class StatusProbeOutput:
    success: bool

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> StatusProbeOutput:
        return cls(success=bool(payload.get("success", False)))


@dataclass(frozen=True)
class ProbeRun:
    namespace: str
    kind: str
    pod_name: str
    phase: str
    logs: str


@dataclass(frozen=True)
class ProbeRecord:
    namespace: str
    kind: str
    pod_name: str
    status: str
    created_at: str
    fingerprint: str | None = None
    message: str = ""


@dataclass(frozen=True)
class GatewayStore:
    access_key_id: str
    secret_access_key: str
    endpoint: str
    object_store_cluster_ip: str
    region: str
