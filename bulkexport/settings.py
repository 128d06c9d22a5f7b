"""
Export Settings Loader

Provides access to the pipeline configuration: batch quotas, queue priorities,
the priority organization allow-list, snapshot cutoff, suppression lookback and
worker sizing. Values come from the environment (optionally a .env file) and
fall back to DEFAULT_SETTINGS.
"""

import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# Default settings (conservative fallbacks)
DEFAULT_SETTINGS = {
    "max_records": {
        "Patient": 5000,
        "Coverage": 4000,
        "ExplanationOfBenefit": 200,
    },
    "priorities": {
        "Patient": 20,
        "Coverage": 20,
        "ExplanationOfBenefit": 100,
    },
    "priority_org_priority": 10,
    "snapshot_cutoff_minutes": 60,
    "suppression_lookback_days": 60,
    "worker_pool_size": 2,
    "worker_poll_interval": 5.0,
    "queue_max_attempts": 3,
    "queue_lease_seconds": 900,
    "queue_backend": "supabase",
    "payload_dir": "./payloads",
}

# Environment variable per resource type, e.g. EXPORT_MAX_RECORDS_EOB
RESOURCE_ENV_SUFFIX = {
    "Patient": "PATIENT",
    "Coverage": "COVERAGE",
    "ExplanationOfBenefit": "EOB",
}


class ExportSettings(BaseModel):
    """Resolved configuration for the export pipeline."""
    max_records: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SETTINGS["max_records"])
    )
    priorities: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SETTINGS["priorities"])
    )
    priority_org_ids: List[str] = Field(default_factory=list)
    priority_org_priority: int = DEFAULT_SETTINGS["priority_org_priority"]
    snapshot_cutoff_minutes: int = Field(default=DEFAULT_SETTINGS["snapshot_cutoff_minutes"], ge=0)
    suppression_lookback_days: int = Field(default=DEFAULT_SETTINGS["suppression_lookback_days"], ge=0)
    worker_pool_size: int = Field(default=DEFAULT_SETTINGS["worker_pool_size"], ge=1)
    worker_poll_interval: float = Field(default=DEFAULT_SETTINGS["worker_poll_interval"], gt=0)
    queue_max_attempts: int = Field(default=DEFAULT_SETTINGS["queue_max_attempts"], ge=1)
    queue_lease_seconds: int = Field(default=DEFAULT_SETTINGS["queue_lease_seconds"], ge=1)
    queue_backend: str = DEFAULT_SETTINGS["queue_backend"]
    payload_dir: str = DEFAULT_SETTINGS["payload_dir"]
    fhir_server_url: Optional[str] = None

    @field_validator("queue_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("supabase", "memory"):
            raise ValueError(f"Unknown queue backend '{value}'")
        return value

    @property
    def snapshot_cutoff(self) -> timedelta:
        return timedelta(minutes=self.snapshot_cutoff_minutes)


def _parse_org_ids(raw: str) -> List[str]:
    return [org.strip() for org in raw.split(",") if org.strip()]


def _env_int(env: Mapping[str, str], name: str, fallback: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return fallback
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}: {raw!r}")
        return fallback


def load_settings(env: Optional[Mapping[str, str]] = None) -> ExportSettings:
    """
    Build ExportSettings from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ after loading .env)

    Returns:
        ExportSettings with environment overrides applied
    """
    if env is None:
        load_dotenv()
        env = os.environ

    max_records = {}
    priorities = {}
    for resource_type, suffix in RESOURCE_ENV_SUFFIX.items():
        max_records[resource_type] = _env_int(
            env, f"EXPORT_MAX_RECORDS_{suffix}", DEFAULT_SETTINGS["max_records"][resource_type]
        )
        priorities[resource_type] = _env_int(
            env, f"EXPORT_PRIORITY_{suffix}", DEFAULT_SETTINGS["priorities"][resource_type]
        )

    values: Dict[str, Any] = {
        "max_records": max_records,
        "priorities": priorities,
        "priority_org_ids": _parse_org_ids(env.get("PRIORITY_ORG_IDS", "")),
        "priority_org_priority": _env_int(
            env, "PRIORITY_ORG_PRIORITY", DEFAULT_SETTINGS["priority_org_priority"]
        ),
        "snapshot_cutoff_minutes": _env_int(
            env, "SNAPSHOT_CUTOFF_MINUTES", DEFAULT_SETTINGS["snapshot_cutoff_minutes"]
        ),
        "suppression_lookback_days": _env_int(
            env, "SUPPRESSION_LOOKBACK_DAYS", DEFAULT_SETTINGS["suppression_lookback_days"]
        ),
        "worker_pool_size": _env_int(env, "WORKER_POOL_SIZE", DEFAULT_SETTINGS["worker_pool_size"]),
        "worker_poll_interval": float(
            env.get("WORKER_POLL_INTERVAL") or DEFAULT_SETTINGS["worker_poll_interval"]
        ),
        "queue_max_attempts": _env_int(env, "QUEUE_MAX_ATTEMPTS", DEFAULT_SETTINGS["queue_max_attempts"]),
        "queue_lease_seconds": _env_int(env, "QUEUE_LEASE_SECONDS", DEFAULT_SETTINGS["queue_lease_seconds"]),
        "queue_backend": env.get("QUEUE_BACKEND") or DEFAULT_SETTINGS["queue_backend"],
        "payload_dir": env.get("FHIR_PAYLOAD_DIR") or DEFAULT_SETTINGS["payload_dir"],
        "fhir_server_url": env.get("FHIR_SERVER_URL") or None,
    }

    return ExportSettings(**values)
