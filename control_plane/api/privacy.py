"""Privacy (GDPR) API endpoints.

POST /api/v1/privacy/consents                          - Record a consent decision
GET  /api/v1/privacy/consents/{subject_id}             - Consent status for every purpose
GET  /api/v1/privacy/consents/{subject_id}/{purpose}   - Consent status for one purpose
POST /api/v1/privacy/requests/access                   - Art. 15 export of held data
POST /api/v1/privacy/requests/rectification            - Art. 16 field edits
POST /api/v1/privacy/requests/erasure                  - Art. 17 erasure / anonymization
POST /api/v1/privacy/requests/portability              - Art. 20 machine-readable export
GET  /api/v1/privacy/requests/{request_id}             - Request status and result
POST /api/v1/privacy/security-events                   - Feed breach detection (operators)
GET  /api/v1/privacy/breaches                          - Recorded breaches (operators)
POST /api/v1/privacy/sweep                             - Expired consents / overdue requests (operators)

Subject-scoped routes require the token subject to be the data subject, or
the admin role. Typed domain errors are mapped to status codes by the
application exception handlers (422 validation, 409 erasure refusal, 503
store outage).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from control_plane.api.deps import (
    Principal,
    get_control_plane,
    get_principal,
    require_operator,
    require_subject_access,
)
from control_plane.compliance import PrivacyRequest, RequestStatus, SecurityEvent
from control_plane.container import ControlPlane

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/privacy", tags=["privacy"])


# ------------------------------------------------------------------ #
# Request models
# ------------------------------------------------------------------ #


class ConsentCreate(BaseModel):
    """Request body for recording a consent decision."""

    subject_id: str = Field(..., min_length=1, max_length=255)
    purpose: str = Field(..., description="Processing purpose, e.g. 'marketing'")
    given: bool
    version: str = Field(default="1.0", max_length=32)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubjectRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=255)


class RectificationRequest(SubjectRequest):
    changes: dict[str, Any] = Field(..., min_length=1, description="Field name -> new value")


class PortabilityRequest(SubjectRequest):
    categories: list[str] | None = Field(
        default=None,
        description="Data categories to export; all portable categories when omitted",
    )


class SecurityEventCreate(BaseModel):
    """One observation for breach detection."""

    kind: str = Field(..., description="data_access | login_failed | data_export | data_modification | ...")
    actor: str | None = None
    subject_ids: list[str] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


def _request_response(request: PrivacyRequest) -> JSONResponse:
    """Completed requests answer 200; store outages leave the request failed and answer 503."""
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE
        if request.status == RequestStatus.FAILED
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=request.to_dict())


# ------------------------------------------------------------------ #
# Consent
# ------------------------------------------------------------------ #


@router.post("/consents", status_code=status.HTTP_201_CREATED)
async def record_consent(
    body: ConsentCreate,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    require_subject_access(principal, body.subject_id)
    record = await control_plane.consent.record(
        body.subject_id,
        body.purpose,
        body.given,
        body.metadata,
        version=body.version,
        actor=principal.subject,
    )
    return record.to_dict()


@router.get("/consents/{subject_id}")
async def consent_overview(
    subject_id: str,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    require_subject_access(principal, subject_id)
    statuses = await control_plane.consent.check_all(subject_id)
    return {"subjectId": subject_id, "purposes": {str(p): s.to_dict() for p, s in statuses.items()}}


@router.get("/consents/{subject_id}/{purpose}")
async def consent_status(
    subject_id: str,
    purpose: str,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    require_subject_access(principal, subject_id)
    result = await control_plane.consent.check(subject_id, purpose)
    return result.to_dict()


# ------------------------------------------------------------------ #
# Data subject requests
# ------------------------------------------------------------------ #


@router.post("/requests/access")
async def request_access(
    body: SubjectRequest,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> JSONResponse:
    require_subject_access(principal, body.subject_id)
    request = await control_plane.gdpr.request_access(body.subject_id, actor=principal.subject)
    return _request_response(request)


@router.post("/requests/rectification")
async def request_rectification(
    body: RectificationRequest,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> JSONResponse:
    require_subject_access(principal, body.subject_id)
    request = await control_plane.gdpr.request_rectification(
        body.subject_id, body.changes, actor=principal.subject
    )
    return _request_response(request)


@router.post("/requests/erasure")
async def request_erasure(
    body: SubjectRequest,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> JSONResponse:
    require_subject_access(principal, body.subject_id)
    request = await control_plane.gdpr.request_erasure(body.subject_id, actor=principal.subject)
    return _request_response(request)


@router.post("/requests/portability")
async def request_portability(
    body: PortabilityRequest,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> JSONResponse:
    require_subject_access(principal, body.subject_id)
    request = await control_plane.gdpr.request_portability(
        body.subject_id, body.categories, actor=principal.subject
    )
    return _request_response(request)


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    principal: Principal = Depends(get_principal),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    request = await control_plane.gdpr.get_request(request_id)
    if request is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Privacy request not found")
    require_subject_access(principal, request.subject_id)
    return request.to_dict()


# ------------------------------------------------------------------ #
# Operators
# ------------------------------------------------------------------ #


@router.post("/security-events")
async def submit_security_event(
    body: SecurityEventCreate,
    principal: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    event = SecurityEvent(
        kind=body.kind,
        occurred_at=body.occurred_at or datetime.now(UTC),
        actor=body.actor,
        subject_ids=tuple(body.subject_ids),
        data=body.data,
    )
    record = await control_plane.breaches.process(event)
    log.info("privacy.security_event_submitted", kind=body.kind, by=principal.subject, breach=record is not None)
    return {"breach": record.to_dict() if record else None}


@router.get("/breaches")
async def list_breaches(
    limit: int = Query(default=100, ge=1, le=1000),
    _: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"breaches": await control_plane.breaches.list_breaches(limit)}


@router.post("/sweep")
async def run_sweep(
    principal: Principal = Depends(require_operator),
    control_plane: ControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    log.info("privacy.sweep_requested", by=principal.subject)
    return await control_plane.gdpr.run_sweep()
