"""
Population Models

Pydantic models for the population data written by the snapshot importer and
read by the export pipeline.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


# Snapshot category holding the beneficiary list for an organization
BENEFICIARY_CATEGORY = "beneficiary"

_SUPPORTED_ORG_PATTERN = re.compile(r"^(A\d{4}|V\d{3}|E\d{4})$")


class ImportStatus(str, Enum):
    """Import state of a population snapshot."""
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class PopulationSnapshot(BaseModel):
    """One import of a beneficiary list for an organization."""
    id: int
    organization_id: str
    category: str = BENEFICIARY_CATEGORY
    name: str
    performance_year: Optional[int] = None
    timestamp: datetime
    import_status: ImportStatus


class MemberRecord(BaseModel):
    """A beneficiary row inside a snapshot. member_id is the diff identity."""
    id: int
    snapshot_id: int
    member_id: str
    legacy_id: Optional[str] = None


class SuppressionEntry(BaseModel):
    """Data sharing preference recorded for a member."""
    member_id: str
    effective_date: datetime
    preference_indicator: str = ""  # "Y" share, "N" opt out, "" no preference


def is_supported_organization(org_id: str) -> bool:
    """Check the organization identifier against the supported formats."""
    return bool(org_id) and _SUPPORTED_ORG_PATTERN.match(org_id) is not None
