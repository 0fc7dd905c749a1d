"""Probe, metrics and admission webhook routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lynq.api.schemas import (
    AdmissionResponse,
    AdmissionReview,
    AdmissionReviewResponse,
    AdmissionStatus,
    ErrorResponse,
    HealthResponse,
)
from lynq.errors import TransientAPIError
from lynq.models.labels import GROUP_VERSION, KIND_HUB
from lynq.validation import validate_form

_log = structlog.get_logger(component="api.routes")

router = APIRouter()


@router.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    from lynq import __version__

    return HealthResponse(status="ok", version=__version__)


@router.get("/readyz", response_model=HealthResponse, responses={503: {"model": ErrorResponse}})
async def readyz(request: Request) -> Any:
    from lynq import __version__

    manager = request.app.state.manager
    if manager is not None and not manager.synced:
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(error="NOT_READY", detail="initial list not complete").model_dump(),
        )
    return HealthResponse(status="ok", version=__version__)


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/validate/lynqform", response_model=AdmissionReviewResponse, response_model_by_alias=True)
async def validate_lynqform(review: AdmissionReview, request: Request) -> AdmissionReviewResponse:
    """Validating admission webhook for LynqForm create and update."""
    req = review.request
    if req.operation == "DELETE" or req.object is None:
        return _review(req.uid, allowed=True)

    obj = req.object
    namespace = (obj.get("metadata") or {}).get("namespace") or req.namespace
    hub_id = (obj.get("spec") or {}).get("hubId")
    hub_found = await _hub_exists(request.app.state.client, namespace, hub_id)

    report = validate_form(obj, hub_found=hub_found)
    if report.valid:
        return _review(req.uid, allowed=True)
    _log.info(
        "lynqform_rejected",
        name=(obj.get("metadata") or {}).get("name", ""),
        namespace=namespace,
        errors=report.messages,
    )
    return _review(req.uid, allowed=False, message="; ".join(report.messages))


async def _hub_exists(client: Any, namespace: str, hub_id: str | None) -> bool | None:
    if client is None or not hub_id or not namespace:
        return None
    try:
        return await client.get(GROUP_VERSION, KIND_HUB, namespace, hub_id) is not None
    except TransientAPIError as exc:
        _log.warning("hub_lookup_failed", hub=hub_id, namespace=namespace, error=str(exc))
        return None


def _review(uid: str, allowed: bool, message: str = "") -> AdmissionReviewResponse:
    status = None if allowed else AdmissionStatus(code=403, message=message)
    return AdmissionReviewResponse(response=AdmissionResponse(uid=uid, allowed=allowed, status=status))
