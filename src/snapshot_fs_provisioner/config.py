from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


@dataclass(frozen=True)
class ProvisionerConfig:
    gateway_image: str = os.getenv("SFP_GATEWAY_IMAGE", "minio/minio:RELEASE.2021-08-05T22-01-19Z")
    probe_image: str = os.getenv("SFP_PROBE_IMAGE", "kotsadm/kotsadm:v1.60.0")
    plugin_fileserver_image: str = os.getenv("SFP_PLUGIN_FILESERVER_IMAGE", "")
    probe_timeout_seconds: int = int(os.getenv("SFP_PROBE_TIMEOUT_SECONDS", "120"))
    poll_interval_seconds: float = float(os.getenv("SFP_POLL_INTERVAL_SECONDS", "1"))
    scale_down_timeout_seconds: int = int(os.getenv("SFP_SCALE_DOWN_TIMEOUT_SECONDS", "120"))
    request_timeout_seconds: int = int(os.getenv("SFP_REQUEST_TIMEOUT_SECONDS", "20"))
    run_as_user: int = int(os.getenv("SFP_RUN_AS_USER", "1001"))
    history_db_path: Path = Path(os.getenv("SFP_HISTORY_DB_PATH", "./data/probe-history.db"))

    def validate(self) -> None:
        for name in (
            "probe_timeout_seconds",
            "poll_interval_seconds",
            "scale_down_timeout_seconds",
            "request_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.run_as_user < 0:
            raise ValueError("run_as_user must be >= 0")
