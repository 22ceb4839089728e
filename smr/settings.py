from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("SMR_DB_PATH", "smr.db")
    namespace: str = os.getenv("SMR_NAMESPACE", "default")
    poll_interval_s: int = _env_int("SMR_POLL_INTERVAL_S", 10)
    workers: int = _env_int("SMR_WORKERS", 4)
    enable_loop: bool = _env_bool("SMR_ENABLE_LOOP", False)
    in_cluster: bool = _env_bool("SMR_IN_CLUSTER", False)

    # Custom resource
    crd_group: str = os.getenv("SMR_CRD_GROUP", "newproj.controller.proj")
    crd_version: str = os.getenv("SMR_CRD_VERSION", "v1")
    crd_plural: str = os.getenv("SMR_CRD_PLURAL", "svcmergerobjs")

    # Merged service shape
    merged_service_name: str = os.getenv("SMR_MERGED_SERVICE_NAME", "merged-service")
    merged_service_port: int = _env_int("SMR_MERGED_SERVICE_PORT", 89)
    target_port: int = _env_int("SMR_TARGET_PORT", 8080)

    # Propagation wait
    propagation_timeout_s: float = _env_float("SMR_PROPAGATION_TIMEOUT_S", 120.0)
    propagation_interval_s: float = _env_float("SMR_PROPAGATION_INTERVAL_S", 2.0)

    # Retry hints handed back to the scheduler
    lease_retry_s: float = _env_float("SMR_LEASE_RETRY_S", 1.0)
    conflict_retry_s: float = _env_float("SMR_CONFLICT_RETRY_S", 2.0)
    propagation_retry_s: float = _env_float("SMR_PROPAGATION_RETRY_S", 15.0)
    store_backoff_s: float = _env_float("SMR_STORE_BACKOFF_S", 2.0)
    max_backoff_s: float = _env_float("SMR_MAX_BACKOFF_S", 300.0)

    # API auth for mutating endpoints
    api_user: str = os.getenv("SMR_API_USER", "admin")
    api_password: str = os.getenv("SMR_API_PASSWORD", "change-me")


settings = Settings()
