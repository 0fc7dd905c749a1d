"""Request and response models for the probe and webhook server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ADMISSION_API_VERSION = "admission.k8s.io/v1"


class ErrorResponse(BaseModel):
    error: str
    detail: str = ""


class HealthResponse(BaseModel):
    status: str
    version: str


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    uid: str
    operation: str = "CREATE"
    namespace: str = ""
    object: dict[str, Any] | None = None


class AdmissionReview(BaseModel):
    """Incoming ``AdmissionReview`` (only the fields the webhook reads)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    request: AdmissionRequest


class AdmissionStatus(BaseModel):
    code: int = 403
    message: str = ""


class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    status: AdmissionStatus | None = None


class AdmissionReviewResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    response: AdmissionResponse
