"""
Job Splitter

Turns one export job into queueable work units:
1. Resolve the member population (all members, or new vs existing for a since diff)
2. Chunk members per resource type using that type's batch quota
3. Assign each batch a queue priority

Units come back in a stable order. In diff mode all NEW batches (full history,
since="") are emitted per resource type first, followed by all EXISTING batches
(since="gt<since>", only changes after that instant). Resource types follow the
order the caller supplied, each type once.
"""

import logging
from typing import List, Optional, Sequence

from bulkexport.jobs.errors import InvalidSinceError, UnsupportedResourceTypeError
from bulkexport.jobs.job_types import DEFAULT_RESOURCE_TYPES, ExportJob, ResourceType, WorkUnit
from bulkexport.jobs.resolver import BeneficiaryResolver
from bulkexport.jobs.utils import chunk_list, parse_timestamp
from bulkexport.models import MemberRecord
from bulkexport.settings import ExportSettings

logger = logging.getLogger(__name__)

SINCE_PREFIX = "gt"


class JobSplitter:
    """
    Partitions a job's members into bounded batches with queue priorities.
    """

    def __init__(self, resolver: BeneficiaryResolver, settings: ExportSettings):
        self.resolver = resolver
        self.settings = settings

    def max_batch_size(self, resource_type: str) -> int:
        """
        Batch quota for a resource type.

        Raises:
            UnsupportedResourceTypeError: No quota is configured for the type
        """
        key = resource_type.value if isinstance(resource_type, ResourceType) else resource_type
        quota = self.settings.max_records.get(key)
        if quota is None:
            raise UnsupportedResourceTypeError(key)
        if quota <= 0:
            raise ValueError(f"Batch quota for {key} must be positive, got {quota}")
        return quota

    def job_priority(self, organization_id: str, resource_type: ResourceType) -> int:
        """
        Queue priority for a batch (lower is dequeued earlier).
        Allow-listed organizations get the fixed priority regardless of list position.
        """
        if organization_id in self.settings.priority_org_ids:
            return self.settings.priority_org_priority
        return self.settings.priorities[resource_type.value]

    def split(
        self,
        job: ExportJob,
        resource_types: Optional[Sequence[str]],
        since: str = "",
        diff_new_vs_existing: bool = False,
    ) -> List[WorkUnit]:
        """
        Build the work units for a job.

        Args:
            job: Parent export job
            resource_types: Requested types, in order (empty = all supported types)
            since: RFC 3339 timestamp from the request, or ""
            diff_new_vs_existing: Split members into new and existing using since

        Returns:
            Ordered list of WorkUnit

        Raises:
            UnsupportedResourceTypeError, InvalidSinceError, ResolutionError
        """
        types = self._validate_types(resource_types)

        if diff_new_vs_existing:
            if not since:
                raise InvalidSinceError(since)
            try:
                since_time = parse_timestamp(since)
            except ValueError as e:
                raise InvalidSinceError(since) from e

            new_members, existing_members = self.resolver.resolve(job.organization_id, since_time)

            units = []
            for resource_type in types:
                units.extend(self._batches(job, resource_type, new_members, ""))
            for resource_type in types:
                units.extend(self._batches(job, resource_type, existing_members, SINCE_PREFIX + since))
        else:
            members = self.resolver.resolve_all(job.organization_id)
            units = []
            for resource_type in types:
                units.extend(self._batches(job, resource_type, members, ""))

        logger.info(
            f"Split job {job.id} for {job.organization_id} into {len(units)} work units "
            f"({', '.join(t.value for t in types)})"
        )
        return units

    def _validate_types(self, resource_types: Optional[Sequence[str]]) -> List[ResourceType]:
        if not resource_types:
            return list(DEFAULT_RESOURCE_TYPES)

        types = []
        for name in resource_types:
            try:
                resource_type = ResourceType(name)
            except ValueError:
                raise UnsupportedResourceTypeError(str(name)) from None
            if resource_type in types:
                continue
            self.max_batch_size(resource_type)
            types.append(resource_type)
        return types

    def _batches(
        self,
        job: ExportJob,
        resource_type: ResourceType,
        members: List[MemberRecord],
        since: str,
    ) -> List[WorkUnit]:
        quota = self.max_batch_size(resource_type)
        priority = self.job_priority(job.organization_id, resource_type)
        member_ids = [m.member_id for m in members]

        return [
            WorkUnit(
                job_id=job.id,
                organization_id=job.organization_id,
                resource_type=resource_type,
                since=since,
                member_ids=batch,
                priority=priority,
            )
            for batch in chunk_list(member_ids, quota)
        ]
