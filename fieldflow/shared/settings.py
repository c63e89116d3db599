"""Shared runtime settings for the propagation engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


def _int(source: Mapping[str, str], key: str, default: int) -> int:
    raw = str(source.get(key, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"invalid_setting:{key}") from exc
    if value < 0:
        raise ValueError(f"invalid_setting:{key}")
    return value


def _float(source: Mapping[str, str], key: str, default: float) -> float:
    raw = str(source.get(key, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"invalid_setting:{key}") from exc
    if value < 0:
        raise ValueError(f"invalid_setting:{key}")
    return value


@dataclass(frozen=True)
class PropagationSettings:
    """SQLite location plus queue, retry and planning limits."""

    data_dir: Path
    sqlite_path: Path
    lease_seconds: int = 120
    max_attempts: int = 8
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    backoff_jitter: float = 0.2
    plan_max_records: int = 10_000
    max_stage_depth: int = 50
    worker_batch_limit: int = 10
    worker_poll_seconds: float = 2.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> "PropagationSettings":
        source = env or os.environ
        data_dir = Path(source.get("FIELDFLOW_DATA_DIR", "./data"))
        sqlite_path = Path(source.get("FIELDFLOW_SQLITE_PATH", str(data_dir / "fieldflow.sqlite")))
        jitter = _float(source, "FIELDFLOW_BACKOFF_JITTER", 0.2)
        if jitter > 1:
            raise ValueError("invalid_setting:FIELDFLOW_BACKOFF_JITTER")
        max_attempts = _int(source, "FIELDFLOW_MAX_ATTEMPTS", 8)
        if max_attempts < 1:
            raise ValueError("invalid_setting:FIELDFLOW_MAX_ATTEMPTS")
        lease_seconds = _int(source, "FIELDFLOW_LEASE_SECONDS", 120)
        if lease_seconds < 1:
            raise ValueError("invalid_setting:FIELDFLOW_LEASE_SECONDS")
        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            lease_seconds=lease_seconds,
            max_attempts=max_attempts,
            backoff_base_seconds=_float(source, "FIELDFLOW_BACKOFF_BASE_SECONDS", 5.0),
            backoff_max_seconds=_float(source, "FIELDFLOW_BACKOFF_MAX_SECONDS", 300.0),
            backoff_jitter=jitter,
            plan_max_records=_int(source, "FIELDFLOW_PLAN_MAX_RECORDS", 10_000),
            max_stage_depth=_int(source, "FIELDFLOW_MAX_STAGE_DEPTH", 50),
            worker_batch_limit=_int(source, "FIELDFLOW_WORKER_BATCH_LIMIT", 10),
            worker_poll_seconds=_float(source, "FIELDFLOW_WORKER_POLL_SECONDS", 2.0),
            log_level=str(source.get("FIELDFLOW_LOG_LEVEL", "INFO")).upper(),
        )

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def get_settings(env: dict[str, str] | None = None) -> PropagationSettings:
    """Build and hydrate settings from environment variables."""

    settings = PropagationSettings.from_env(env)
    settings.ensure_directories()
    return settings
