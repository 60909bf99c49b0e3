"""Core service configuration & tunable reconciliation rules.

Everything that may need tuning per deployment (provider credentials, batch
sizes, retry/circuit thresholds, lock backend) is centralized here as module
constants read from the environment. Per-task runtime settings (enabled flag,
cron expression, window) are NOT here: they live in the developer_settings
table so they can be changed without a redeploy (see
``email_reconciler.reconciliation.task_config``).
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ------------------------------- Postmark --------------------------------- #
POSTMARK_API_TOKEN: str | None = os.getenv("POSTMARK_API_TOKEN") or None
POSTMARK_API_BASE_URL: str = os.getenv("POSTMARK_API_BASE_URL", "https://api.postmarkapp.com").rstrip("/")
POSTMARK_REQUEST_TIMEOUT: float = float(os.getenv("POSTMARK_REQUEST_TIMEOUT", "30"))

# ----------------------------- Reconciliation ----------------------------- #
RECONCILIATION_SETTINGS: dict[str, int | float | bool] = {
    # Records processed per batch inside a phase (bounds memory per batch).
    "batch_size": 50,
    # Used when reconciliation_<id>_window_hours is unset or unusable.
    "default_window_hours": 72,
    # Postmark's maximum page size for message listing.
    "page_size": 500,
    # Kick off one run per task right after the scheduler starts.
    "run_on_startup": _env_bool("RECONCILIATION_RUN_ON_STARTUP", True),
    # How long shutdown waits for in-flight runs before giving up.
    "shutdown_grace_seconds": 10,
}

# -------------------------------- Scheduler ------------------------------- #
SCHEDULER_SETTINGS: dict[str, str] = {
    # IANA zone cron expressions are evaluated in.
    "timezone": os.getenv("RECONCILIATION_CRON_TIMEZONE", "UTC").strip() or "UTC",
}

# ------------------------------ Advisory Lock ----------------------------- #
LOCK_SETTINGS: dict[str, str | int] = {
    # auto | postgres | redis | memory
    "backend": os.getenv("RECONCILIATION_LOCK_BACKEND", "auto").strip().lower(),
    "redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
    # Redis lock TTL, renewed while a run is alive; bounds how long a crashed holder blocks others.
    "redis_lock_timeout_seconds": int(os.getenv("RECONCILIATION_LOCK_TIMEOUT", "3600")),
    "key_prefix": "email_reconciler:lock:",
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
    "failure_threshold": 5,          # Consecutive failures before OPEN
    "open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
    "half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
    "base_seconds": 1,
    "factor": 2,          # Exponential factor
    "max_seconds": 30,
    "max_attempts": 3,
    "jitter_pct": 0.10,   # +/-10% jitter
}

# ------------------------------ Admin surface ----------------------------- #
# Bearer token required by the /api/v1/reconciliation endpoints. When unset
# the endpoints answer 503 rather than running unauthenticated.
ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN") or None

__all__ = [
    "POSTMARK_API_TOKEN",
    "POSTMARK_API_BASE_URL",
    "POSTMARK_REQUEST_TIMEOUT",
    # Rule groups
    "RECONCILIATION_SETTINGS",
    "SCHEDULER_SETTINGS",
    "LOCK_SETTINGS",
    "CIRCUIT_BREAKER",
    "BACKOFF_POLICY",
    "ADMIN_API_TOKEN",
]
