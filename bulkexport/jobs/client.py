"""
Resource Retrieval Client

Fetches clinical resources for one member from a FHIR server and returns the
raw bundle text. The runner parses the bundle; this client does not retry.
"""

import logging
from typing import Optional, Protocol

import httpx

from bulkexport.jobs.errors import RetrievalFailure
from bulkexport.jobs.job_types import ResourceType

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds

# Search parameter identifying the member for each resource type
MEMBER_SEARCH_PARAM = {
    ResourceType.PATIENT: "_id",
    ResourceType.COVERAGE: "beneficiary",
    ResourceType.EXPLANATION_OF_BENEFIT: "patient",
}


class ResourceClient(Protocol):
    """Retrieves one member's resources as JSON bundle text."""

    async def fetch_resource(self, resource_type: ResourceType, member_id: str, since: str = "") -> str:
        ...


class FhirResourceClient:
    """
    httpx-based client for a FHIR server.

    Args:
        base_url: Server root, e.g. https://fhir.example.org/v1/fhir
        client: Optional pre-built AsyncClient (tests use httpx.MockTransport)
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def fetch_resource(self, resource_type: ResourceType, member_id: str, since: str = "") -> str:
        """
        Search for a member's resources.

        Args:
            resource_type: Resource to search
            member_id: Member identifier
            since: "" or a FHIR date filter such as "gt2020-02-13T08:00:00.000-05:00"

        Returns:
            Response body (a JSON Bundle)

        Raises:
            RetrievalFailure: Transport error or non-success status
        """
        resource_type = ResourceType(resource_type)
        params = {
            MEMBER_SEARCH_PARAM[resource_type]: member_id,
            "_format": "application/fhir+json",
        }
        if since:
            params["_lastUpdated"] = since

        url = f"{self.base_url}/{resource_type.value}/"
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise RetrievalFailure(f"Error retrieving {resource_type.value} for {member_id}: {e}") from e

        if not response.is_success:
            raise RetrievalFailure(
                f"Error retrieving {resource_type.value} for {member_id}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.text
