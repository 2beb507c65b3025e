"""
Pydantic schemas for the citizen alert API.

Separated from the route handlers so they are reusable across
the codebase (stream handlers, admin tooling, tests).

Only shape is checked here (types, ranges, base64). Business rules
(service area, photo count, notes length, phone format) are enforced by
the alert core so every entry point reports them the same way.
"""

from __future__ import annotations

import base64
import binascii
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.alerts.evidence import EvidenceItem
from backend.app.alerts.report_service import ReportSubmission


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class EvidenceInput(BaseModel):
    """
    One photo. Either a reference returned by an earlier upload, or the
    image itself as base64 (uploaded by the server before it is stored).
    """
    reference: Optional[str] = Field(
        None, examples=["https://cdn.example.org/evidence/3fa2c91b.jpg"],
    )
    content_base64: Optional[str] = Field(None, description="Base64-encoded image")
    content_type: str = Field("image/jpeg", examples=["image/jpeg"])

    @model_validator(mode="after")
    def _exactly_one(self) -> "EvidenceInput":
        if (self.reference is None) == (self.content_base64 is None):
            raise ValueError("Provide exactly one of reference or content_base64")
        return self

    @field_validator("content_base64")
    @classmethod
    def _decodable(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("content_base64 is not valid base64")
        return v

    def to_item(self) -> EvidenceItem:
        if self.reference is not None:
            return EvidenceItem.from_reference(self.reference)
        return EvidenceItem.from_bytes(
            base64.b64decode(self.content_base64), self.content_type,
        )


class ReportRequest(BaseModel):
    """Submission form payload."""
    display_name: str = Field(..., examples=["Maria da Silva"])
    contact_id: str = Field(..., description="Phone number", examples=["(68) 99228-8071"])
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[-9.9747])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[-67.8107])
    address_text: str = Field("", examples=["Rua Rio Grande do Sul, 123"])
    neighborhood: Optional[str] = Field(None, examples=["Base"])
    notes: Optional[str] = Field(None, examples=["Water at knee height"])
    evidence: List[EvidenceInput] = Field(default_factory=list)

    def to_submission(self) -> ReportSubmission:
        return ReportSubmission(
            display_name=self.display_name,
            contact_id=self.contact_id,
            latitude=self.latitude,
            longitude=self.longitude,
            address_text=self.address_text,
            neighborhood=self.neighborhood,
            notes=self.notes,
            evidence=[e.to_item() for e in self.evidence],
        )


class NotesUpdate(BaseModel):
    notes: Optional[str] = Field(None, examples=["Water receding"])
