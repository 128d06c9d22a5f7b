"""
Job Utilities

Shared helpers for the scheduler and workers.
"""

import logging
from typing import Any, List
from datetime import datetime

logger = logging.getLogger(__name__)


def chunk_list(lst: List[Any], chunk_size: int) -> List[List[Any]]:
    """Split a list into chunks, preserving order. Only the last chunk may be short."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}m"
    hours = seconds / 3600
    return f"{hours:.1f}h"


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp such as 2020-02-13T08:00:00.000-05:00.
    A trailing "Z" is accepted for UTC.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)
