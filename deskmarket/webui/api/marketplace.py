"""
Marketplace API - install, track, list and remove desktop apps

Endpoints (mounted under /api/marketplace):
- POST   /install                      start an install job
- GET    /install/{session_id}         progress (legacy)
- GET    /install/{session_id}/progress  progress + elapsedTime
- DELETE /install/{session_id}         cancel a job
- GET    /jobs, /jobs/{session_id}     job listing and detail
- GET    /apps, /apps/{app_id}         registry listing and installed app detail
- DELETE /apps/{app_id}                uninstall
- GET    /apps/{app_id}/updates        update check
- POST   /apps/{app_id}/update         start an update job
- GET    /installed, /categories

A completed scan with no threats only means nothing suspicious turned up
within the scan level's budgets; see ``securityScan.truncated`` in the app
metadata.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from deskmarket.core.marketplace.coordinator import InstallRequest
from deskmarket.core.marketplace.exceptions import JobNotFoundError
from deskmarket.core.marketplace.models import JobInfo, JobStatus, JobType, ScanLevel
from deskmarket.core.marketplace.service import MarketplaceService
from deskmarket.core.marketplace.validator import is_valid_app_id
from deskmarket.core.time import elapsed_ms, utc_now
from deskmarket.webui.api.error_envelope import APIError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/marketplace", tags=["marketplace"])

PROGRESS_URL = "/api/marketplace/install/{session_id}/progress"


class InstallBody(BaseModel):
    """POST /install payload"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: Optional[str] = None
    manifest_id: Optional[str] = None
    permissions: Any = None
    sandbox_options: Optional[Dict[str, Any]] = None
    scan_level: Optional[ScanLevel] = None
    user_id: Optional[str] = None

    def to_request(self) -> InstallRequest:
        return InstallRequest(
            url=self.url,
            manifest_id=self.manifest_id,
            permissions=self.permissions,
            sandbox_options=self.sandbox_options,
            scan_level=self.scan_level,
            user_id=self.user_id,
        )


class UpdateBody(BaseModel):
    """POST /apps/{app_id}/update payload"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    url: Optional[str] = None
    permissions: Any = None
    sandbox_options: Optional[Dict[str, Any]] = None
    scan_level: Optional[ScanLevel] = None
    user_id: Optional[str] = None


def get_service(request: Request) -> MarketplaceService:
    """Marketplace service created by the app lifespan"""
    return request.app.state.marketplace


def _require_app_id(app_id: str) -> None:
    if not is_valid_app_id(app_id):
        raise APIError("INVALID_APP_ID", "Invalid app ID", {"appId": app_id}, status_code=400)


def _session_not_found(session_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "sessionId": session_id,
            "status": "not_found",
            "message": "Installation session not found or completed",
        },
    )


def job_durations(job: JobInfo) -> Dict[str, Optional[int]]:
    """queuedMs, runMs and totalMs of a job (running jobs measured to now)"""
    end = job.completed_at or utc_now()
    queued_until = job.started_at or end
    return {
        "queuedMs": elapsed_ms(job.created_at, queued_until),
        "runMs": elapsed_ms(job.started_at, end) if job.started_at else None,
        "totalMs": elapsed_ms(job.created_at, end),
    }


# ----------------------------------------------------------------------
# Installation
# ----------------------------------------------------------------------

@router.post("/install")
async def start_install(body: InstallBody, service: MarketplaceService = Depends(get_service)):
    """
    Start installing an app package from a URL

    Returns immediately with a session id; poll progressUrl for status.
    """
    if not body.url and not body.manifest_id:
        raise ValidationError("URL or manifest ID is required")

    job = service.coordinator.start_install(body.to_request())
    return {
        "success": True,
        "sessionId": job.session_id,
        "progressUrl": PROGRESS_URL.format(session_id=job.session_id),
        "message": "Installation started",
    }


@router.get("/install/{session_id}")
async def get_install_status(session_id: str, service: MarketplaceService = Depends(get_service)):
    progress = service.registry.get_progress(session_id)
    if progress is None:
        return _session_not_found(session_id)
    return progress.to_api()


@router.get("/install/{session_id}/progress")
async def get_install_progress(session_id: str, service: MarketplaceService = Depends(get_service)):
    """Progress record plus elapsedTime in milliseconds"""
    progress = service.registry.get_progress(session_id)
    if progress is None:
        return _session_not_found(session_id)

    data = progress.to_api()
    data["elapsedTime"] = elapsed_ms(progress.start_time)
    return data


@router.delete("/install/{session_id}")
async def cancel_install(session_id: str, service: MarketplaceService = Depends(get_service)):
    try:
        await service.coordinator.cancel(session_id)
    except JobNotFoundError as e:
        raise APIError("NOT_FOUND", str(e), {"sessionId": session_id}, status_code=400)
    except ValueError as e:
        raise APIError("INVALID_STATE", str(e), {"sessionId": session_id}, status_code=400)

    return {"success": True, "message": "Installation cancelled"}


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

@router.get("/jobs")
async def list_jobs(
    status: Optional[JobStatus] = Query(None),
    job_type: Optional[JobType] = Query(None, alias="type"),
    user_id: Optional[str] = Query(None, alias="userId"),
    service: MarketplaceService = Depends(get_service),
):
    jobs, stats = service.registry.list_jobs(status=status, job_type=job_type, user_id=user_id)
    return {"jobs": [job.to_api() for job in jobs], "stats": stats}


@router.get("/jobs/{session_id}")
async def get_job(session_id: str, service: MarketplaceService = Depends(get_service)):
    job = service.registry.get_job(session_id)
    if job is None:
        raise NotFoundError("Job", session_id)

    data = job.to_api()
    data["durations"] = job_durations(job)
    return data


# ----------------------------------------------------------------------
# Apps
# ----------------------------------------------------------------------

@router.get("/apps")
async def list_apps(
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: str = "name",
    service: MarketplaceService = Depends(get_service),
):
    return service.catalog.list_available(
        category=category, search=search, page=page, limit=limit, sort=sort,
    )


@router.get("/apps/{app_id}")
async def get_app(app_id: str, service: MarketplaceService = Depends(get_service)):
    _require_app_id(app_id)
    return service.catalog.get_app(app_id)


@router.delete("/apps/{app_id}")
async def uninstall_app(app_id: str, service: MarketplaceService = Depends(get_service)):
    _require_app_id(app_id)
    job = await service.coordinator.uninstall(app_id)
    return {
        "success": True,
        "message": "App uninstalled successfully",
        "sessionId": job.session_id,
    }


@router.get("/apps/{app_id}/updates")
async def check_updates(app_id: str, service: MarketplaceService = Depends(get_service)):
    _require_app_id(app_id)
    return service.catalog.check_updates(app_id)


@router.post("/apps/{app_id}/update")
async def update_app(app_id: str, body: UpdateBody, service: MarketplaceService = Depends(get_service)):
    """Reinstall an installed app from a new package URL"""
    _require_app_id(app_id)
    if not body.url:
        raise ValidationError("URL is required")

    job = service.coordinator.start_update(
        app_id,
        InstallRequest(
            url=body.url,
            permissions=body.permissions,
            sandbox_options=body.sandbox_options,
            scan_level=body.scan_level,
            user_id=body.user_id,
        ),
    )
    return {
        "success": True,
        "sessionId": job.session_id,
        "progressUrl": PROGRESS_URL.format(session_id=job.session_id),
        "message": "App update started",
    }


@router.get("/installed")
async def list_installed(service: MarketplaceService = Depends(get_service)):
    return service.catalog.list_installed()


@router.get("/categories")
async def list_categories(service: MarketplaceService = Depends(get_service)):
    return service.catalog.list_categories()
