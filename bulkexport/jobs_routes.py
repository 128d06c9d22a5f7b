"""
Bulk Export API Routes

Provides endpoints for:
- Starting an export for all of an organization's members
- Starting a group export (new vs existing members when _since is given)
- Checking job status and retrieving the output manifest
- Downloading finished artifacts
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from bulkexport.jobs.artifacts import artifact_name
from bulkexport.jobs.errors import ExportError, JobAlreadyScheduledError, JobNotFoundError
from bulkexport.jobs.job_types import ExportJob, ExportStartResponse, JobStatus
from bulkexport.models import is_supported_organization
from bulkexport.service import ExportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["export"])
data_router = APIRouter(prefix="/data", tags=["data"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_export_service(request: Request) -> ExportService:
    """The ExportService the app was created with."""
    return request.app.state.export_service


def _parse_types(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


# =============================================================================
# EXPORT ENDPOINTS
# =============================================================================

def _start_export(
    service: ExportService,
    request: Request,
    org_id: str,
    resource_types: List[str],
    since: str,
    diff_mode: bool,
) -> JSONResponse:
    if not is_supported_organization(org_id):
        raise HTTPException(status_code=400, detail=f"Unsupported organization identifier {org_id}")

    job_id = service.create_job(org_id, str(request.url))

    try:
        enqueued = service.schedule(job_id, resource_types, since, diff_mode)
    except (JobNotFoundError, JobAlreadyScheduledError) as e:
        logger.error(f"Error scheduling job {job_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except ExportError as e:
        logger.warning(f"Export request for {org_id} rejected: {e}")
        # Nothing was enqueued for this job; don't leave it Pending
        service.reject_job(job_id, e)
        raise HTTPException(status_code=400, detail=str(e))

    body = ExportStartResponse(job_id=job_id, status=JobStatus.PENDING, enqueued_units=enqueued)
    return JSONResponse(
        status_code=202,
        content=body.model_dump(mode="json"),
        headers={"Content-Location": f"{router.prefix}/jobs/{job_id}"},
    )


@router.get("/{org_id}/Patient/$export")
async def export_all_members(
    org_id: str,
    request: Request,
    resource_types: Optional[str] = Query(default=None, alias="_type"),
    since: Optional[str] = Query(default=None, alias="_since"),
    service: ExportService = Depends(get_export_service)
):
    """
    Start an export for every current member of the organization.

    Returns 202 with a Content-Location pointing at the job status endpoint.
    """
    return _start_export(service, request, org_id, _parse_types(resource_types), since or "", diff_mode=False)


@router.get("/{org_id}/Group/all/$export")
async def export_group(
    org_id: str,
    request: Request,
    resource_types: Optional[str] = Query(default=None, alias="_type"),
    since: Optional[str] = Query(default=None, alias="_since"),
    service: ExportService = Depends(get_export_service)
):
    """
    Start a group export.

    With _since, members new since that instant get their full history and
    existing members only get changes after it.
    """
    since = since or ""
    return _start_export(service, request, org_id, _parse_types(resource_types), since, diff_mode=bool(since))


# =============================================================================
# STATUS ENDPOINTS
# =============================================================================

def _manifest(service: ExportService, job: ExportJob, base_url: str) -> Dict[str, Any]:
    payload_dir = service.settings.payload_dir
    output = []
    errors = []
    seen = set()

    for key in service.list_artifacts(job.id):
        if key.file_name in seen:
            continue
        seen.add(key.file_name)

        resource_type = key.file_name[len(job.organization_id) + 1:-len(".ndjson")]
        output.append({
            "type": resource_type,
            "url": f"{base_url}data/{job.id}/{key.file_name}",
        })

        error_file = artifact_name(job.organization_id, resource_type, error=True)
        if os.path.exists(os.path.join(payload_dir, job.id, error_file)):
            errors.append({
                "type": "OperationOutcome",
                "url": f"{base_url}data/{job.id}/{error_file}",
            })

    return {
        "transactionTime": job.updated_at.isoformat() if job.updated_at else None,
        "request": job.request_url,
        "requiresAccessToken": False,
        "output": output,
        "error": errors,
    }


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    request: Request,
    service: ExportService = Depends(get_export_service)
):
    """
    Get the current status of a job.

    202 with X-Progress while running, 200 with the output manifest once
    completed, 500 when failed, 410 once archived.
    """
    try:
        status = service.poll_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    if status.status in (JobStatus.PENDING, JobStatus.IN_PROGRESS):
        return JSONResponse(
            status_code=202,
            content=status.model_dump(mode="json"),
            headers={"X-Progress": status.message},
        )

    if status.status == JobStatus.FAILED:
        return JSONResponse(status_code=500, content=status.model_dump(mode="json"))

    if status.status == JobStatus.ARCHIVED:
        raise HTTPException(status_code=410, detail="Job has been archived")

    job = service.get_job(job_id)
    return JSONResponse(status_code=200, content=_manifest(service, job, str(request.base_url)))


@data_router.get("/{job_id}/{file_name}")
async def get_artifact(
    job_id: str,
    file_name: str,
    service: ExportService = Depends(get_export_service)
):
    """Download one artifact of a job as newline-delimited JSON."""
    if ".." in job_id or ".." in file_name or not file_name.endswith(".ndjson"):
        raise HTTPException(status_code=404, detail="File not found")

    path = os.path.join(service.settings.payload_dir, job_id, file_name)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(path, media_type="application/fhir+ndjson")
