"""
jobs.py
-------
Purpose:
    Job endpoints: service requests, status changes, tracking and work log.
    Every write goes through the TransitionEngine; the route only maps the
    request to an operation and the Outcome to a response.

Usage:
    POST  /jobs                    - customer opens a service request
    GET   /jobs                    - jobs the caller takes part in
    GET   /jobs/open               - unassigned jobs (mechanics, admins)
    GET   /jobs/{id}               - one job
    GET   /jobs/{id}/timeline      - activity log
    GET   /jobs/{id}/quotes        - quotes on the job
    PATCH /jobs/{id}/status        - drive the status machine
    POST  /jobs/{id}/location      - mechanic position (+ optional ETA)
    POST  /jobs/{id}/eta           - mechanic ETA
    POST  /jobs/{id}/parts         - add a part used
    PATCH /jobs/{id}/totals        - merge cost components
    POST  /jobs/{id}/timer         - START / PAUSE / RESUME / END
    POST  /jobs/{id}/photos        - attach a photo URL
"""

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.errors import ErrorKind, ServiceError
from ..domain.models import Job, JobPart, JobStatus, JobTimelineEntry, Quote
from .deps import get_services
from .errors import raise_for_error, unwrap
from .schemas import (
    CreateJobRequest,
    EtaUpdateRequest,
    LocationUpdateRequest,
    PhotoRequest,
    StatusUpdateRequest,
    TimerRequest,
    TotalsUpdateRequest,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = get_logger(__name__)


@router.post("", response_model=Job, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: CreateJobRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.engine.create_service_request(
            principal.user_id,
            body.service_type,
            body.description,
            body.location,
            vehicle=body.vehicle,
            urgency=body.urgency,
            scheduled_start=body.scheduled_start,
            scheduled_end=body.scheduled_end,
            notes=body.notes,
        )
    )


@router.get("", response_model=list[Job])
async def list_jobs(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    job_status = None
    if status_filter:
        try:
            job_status = JobStatus.parse(status_filter)
        except ValueError as e:
            raise_for_error(ServiceError(ErrorKind.VALIDATION_ERROR, str(e)))
    return unwrap(await services.engine.list_jobs(principal.user_id, job_status, limit))


@router.get("/open", response_model=list[Job])
async def list_open_jobs(
    limit: int = Query(default=50, ge=1, le=100),
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.list_open_jobs(principal.user_id, limit))


@router.get("/{job_id}", response_model=Job)
async def get_job(
    job_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.get_job(job_id, principal.user_id))


@router.get("/{job_id}/timeline", response_model=list[JobTimelineEntry])
async def get_timeline(
    job_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.get_timeline(job_id, principal.user_id))


@router.get("/{job_id}/quotes", response_model=list[Quote])
async def list_job_quotes(
    job_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.list_quotes(job_id, principal.user_id))


@router.patch("/{job_id}/status", response_model=Job)
async def update_status(
    job_id: str,
    body: StatusUpdateRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    """
    Move a job to a new status.

    Raises:
        403: caller may not change this job
        409: transition not allowed from the current status
        422: unknown status
    """
    return unwrap(
        await services.engine.update_job_status(job_id, principal.user_id, body.status, notes=body.notes)
    )


@router.post("/{job_id}/location", response_model=Job)
async def update_location(
    job_id: str,
    body: LocationUpdateRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.engine.update_mechanic_location(
            job_id, principal.user_id, body.lat, body.lng, eta_minutes=body.eta_minutes
        )
    )


@router.post("/{job_id}/eta", response_model=Job)
async def update_eta(
    job_id: str,
    body: EtaUpdateRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.update_eta(job_id, principal.user_id, body.eta_minutes))


@router.post("/{job_id}/parts", response_model=Job)
async def add_part(
    job_id: str,
    body: JobPart,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.add_job_part(job_id, principal.user_id, body))


@router.patch("/{job_id}/totals", response_model=Job)
async def update_totals(
    job_id: str,
    body: TotalsUpdateRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.engine.update_totals(
            job_id,
            principal.user_id,
            labor=body.labor,
            parts=body.parts,
            fees=body.fees,
            discounts=body.discounts,
        )
    )


@router.post("/{job_id}/timer", response_model=Job)
async def record_timer(
    job_id: str,
    body: TimerRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.record_timer(job_id, principal.user_id, body.action))


@router.post("/{job_id}/photos", response_model=Job)
async def add_photo(
    job_id: str,
    body: PhotoRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.engine.add_job_photo(job_id, principal.user_id, body.url, body.description)
    )
