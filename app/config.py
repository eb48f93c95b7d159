"""
Application Configuration
Centralized configuration for the scheduling engine, Redis and the outbox
"""
import os
from dataclasses import dataclass, field
from redis import Redis


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# Redis Configuration
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

# Backends
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")  # memory | supabase
# JSON snapshot of clinics and doctors; required with STORE_BACKEND=memory
MASTER_DATA_FILE = os.getenv("MASTER_DATA_FILE", "")
LOCK_BACKEND = os.getenv("LOCK_BACKEND", "memory")    # memory | redis

# Notification gateway (outbound events)
NOTIFICATION_GATEWAY_URL = os.getenv("NOTIFICATION_GATEWAY_URL", "")
OUTBOX_POLL_INTERVAL = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "10"))
OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "5"))

# Background matching loop
RESCHEDULE_WORKER_ENABLED = _env_bool("RESCHEDULE_WORKER_ENABLED", "true")

# Master-data webhooks (HMAC-SHA256 of the raw body in X-Signature when set)
MASTER_DATA_WEBHOOK_SECRET = os.getenv("MASTER_DATA_WEBHOOK_SECRET", "")


@dataclass
class SchedulingSettings:
    """Tunables for booking validation and the rescheduling queue."""

    min_duration_minutes: int = 10
    max_duration_minutes: int = 240
    slot_granularity_minutes: int = 15
    lookahead_days: int = 14
    max_attempts: int = 5
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0
    backoff_jitter: float = 0.2
    lock_timeout_seconds: float = 5.0
    match_timeout_seconds: float = 30.0
    worker_concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    poll_interval_seconds: float = 1.0
    enforce_working_hours: bool = True
    allow_unit_substitution: bool = True

    @classmethod
    def from_env(cls) -> "SchedulingSettings":
        """Build settings from SCHED_* environment variables."""
        return cls(
            min_duration_minutes=int(os.getenv("SCHED_MIN_DURATION_MINUTES", "10")),
            max_duration_minutes=int(os.getenv("SCHED_MAX_DURATION_MINUTES", "240")),
            slot_granularity_minutes=int(os.getenv("SCHED_SLOT_GRANULARITY_MINUTES", "15")),
            lookahead_days=int(os.getenv("SCHED_LOOKAHEAD_DAYS", "14")),
            max_attempts=int(os.getenv("SCHED_MAX_ATTEMPTS", "5")),
            backoff_base_seconds=float(os.getenv("SCHED_BACKOFF_BASE_SECONDS", "60")),
            backoff_max_seconds=float(os.getenv("SCHED_BACKOFF_MAX_SECONDS", "3600")),
            backoff_jitter=float(os.getenv("SCHED_BACKOFF_JITTER", "0.2")),
            lock_timeout_seconds=float(os.getenv("SCHED_LOCK_TIMEOUT_SECONDS", "5")),
            match_timeout_seconds=float(os.getenv("SCHED_MATCH_TIMEOUT_SECONDS", "30")),
            worker_concurrency=int(
                os.getenv("SCHED_WORKER_CONCURRENCY", str(os.cpu_count() or 1))
            ),
            poll_interval_seconds=float(os.getenv("SCHED_POLL_INTERVAL_SECONDS", "1.0")),
            enforce_working_hours=_env_bool("SCHED_ENFORCE_WORKING_HOURS", "true"),
            allow_unit_substitution=_env_bool("SCHED_ALLOW_UNIT_SUBSTITUTION", "true"),
        )


def get_redis_client() -> Redis:
    """
    Get configured Redis client with optimized settings

    Returns:
        Redis: Configured Redis client instance
    """
    return Redis.from_url(
        REDIS_URL,
        decode_responses=True,  # Automatically decode responses to strings
        socket_connect_timeout=5,  # 5 second connection timeout
        socket_timeout=5,  # 5 second operation timeout
        retry_on_timeout=True,  # Retry operations that timeout
        health_check_interval=30  # Health check every 30 seconds
    )
