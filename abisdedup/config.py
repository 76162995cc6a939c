"""
Runtime settings read from the environment.

Call ``load_env()`` first when a .env file should be honoured; the CLI does
this on startup.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .abis.correlator import ConclusivenessPolicy, DuplicateResponsePolicy

DISPATCH_MODES = ("outbox", "http")


@dataclass(frozen=True)
class Settings:
    db_path: Path = Path("data/dedup.db")
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    abis_app_code: str = "ABIS"
    dispatch_mode: str = "outbox"
    abis_endpoint_url: Optional[str] = None
    outbox_path: Path = Path("data/abis_outbox.jsonl")
    reference_url_template: str = "http://datashare/biometrics/{bio_ref_id}"
    high_confidence_threshold: float = 0.90
    min_score_gap: float = 0.30
    request_timeout_seconds: int = 3600
    max_retries: int = 3
    retry_base_delay: float = 1.0
    max_resubmissions: int = 2
    duplicate_response_policy: DuplicateResponsePolicy = DuplicateResponsePolicy.IGNORE
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 60.0

    @property
    def policy(self) -> ConclusivenessPolicy:
        return ConclusivenessPolicy(
            high_confidence_threshold=self.high_confidence_threshold,
            min_score_gap=self.min_score_gap,
        )


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from environment variables.

    Args:
        env: Mapping to read from (default: os.environ)

    Returns:
        Settings instance

    Raises:
        ValueError: If a variable is malformed
    """
    env = os.environ if env is None else env
    defaults = Settings()

    dispatch_mode = env.get("ABIS_DISPATCH_MODE", defaults.dispatch_mode).strip().lower()
    if dispatch_mode not in DISPATCH_MODES:
        raise ValueError(f"ABIS_DISPATCH_MODE must be one of {DISPATCH_MODES}, got {dispatch_mode!r}")
    endpoint = env.get("ABIS_ENDPOINT_URL") or None
    if dispatch_mode == "http" and not endpoint:
        raise ValueError("ABIS_ENDPOINT_URL is required when ABIS_DISPATCH_MODE=http")

    policy_raw = env.get("DEDUP_DUPLICATE_RESPONSE_POLICY", defaults.duplicate_response_policy.value)
    try:
        duplicate_policy = DuplicateResponsePolicy(policy_raw.strip().lower())
    except ValueError:
        raise ValueError(f"DEDUP_DUPLICATE_RESPONSE_POLICY must be 'ignore' or 'reject', got {policy_raw!r}")

    threshold = _read_float(env, "DEDUP_HIGH_CONFIDENCE_THRESHOLD", defaults.high_confidence_threshold)
    gap = _read_float(env, "DEDUP_MIN_SCORE_GAP", defaults.min_score_gap)
    if gap < 0:
        raise ValueError(f"DEDUP_MIN_SCORE_GAP must not be negative, got {gap}")

    return Settings(
        db_path=Path(env.get("DEDUP_DB_PATH", str(defaults.db_path))),
        log_level=env.get("DEDUP_LOG_LEVEL", defaults.log_level).upper(),
        log_dir=Path(env.get("DEDUP_LOG_DIR", str(defaults.log_dir))),
        abis_app_code=env.get("ABIS_APP_CODE", defaults.abis_app_code),
        dispatch_mode=dispatch_mode,
        abis_endpoint_url=endpoint,
        outbox_path=Path(env.get("ABIS_OUTBOX_PATH", str(defaults.outbox_path))),
        reference_url_template=env.get("ABIS_REFERENCE_URL_TEMPLATE", defaults.reference_url_template),
        high_confidence_threshold=threshold,
        min_score_gap=gap,
        request_timeout_seconds=_read_int(env, "DEDUP_REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds),
        max_retries=_read_int(env, "DEDUP_MAX_RETRIES", defaults.max_retries),
        retry_base_delay=_read_float(env, "DEDUP_RETRY_BASE_DELAY", defaults.retry_base_delay),
        max_resubmissions=_read_int(env, "DEDUP_MAX_RESUBMISSIONS", defaults.max_resubmissions),
        duplicate_response_policy=duplicate_policy,
        circuit_failure_threshold=_read_int(env, "ABIS_CIRCUIT_FAILURE_THRESHOLD", defaults.circuit_failure_threshold),
        circuit_recovery_seconds=_read_float(env, "ABIS_CIRCUIT_RECOVERY_SECONDS", defaults.circuit_recovery_seconds),
    )
