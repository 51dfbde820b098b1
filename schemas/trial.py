"""Trial provisioning and pipeline schemas."""
import re
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

Variant = Literal["A", "B"]

ManualKillReason = Literal["no_access", "no_response", "no_technical_owner", "no_urgency", "other"]


class Attribution(BaseModel):
    owner_sdr_id: Optional[UUID] = None
    first_touch_code: Optional[str] = None
    last_touch_code: Optional[str] = None


class ProvisionRequest(BaseModel):
    """What an SDR submits to start a trial for a CRM lead."""

    lead_id: UUID
    business_name: str
    email: str
    website: str
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    sdr_user_id: Optional[UUID] = None
    sdr_code: Optional[str] = None
    source: str = "crm"

    @field_validator("business_name")
    @classmethod
    def _business_name_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("businessName is required")
        return v.strip()

    @field_validator("email")
    @classmethod
    def _email_format(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            raise ValueError("email is required")
        if not _EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v

    @field_validator("website")
    @classmethod
    def _normalise_website(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if not v:
            raise ValueError("Website URL is required to start a trial")
        if not v.startswith(("http://", "https://")):
            v = "https://" + v
        return v.rstrip("/")

    @field_validator("contact_name", "phone")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    def provisioning_payload(self) -> dict:
        """Body for the external product's provision-trial endpoint."""
        payload = {
            "email": self.email,
            "business_name": self.business_name,
            "contact_name": self.contact_name,
            "phone": self.phone,
            "website": self.website,
            "lead_id": str(self.lead_id),
            "sdr_user_id": str(self.sdr_user_id) if self.sdr_user_id else None,
            "source": self.source,
        }
        return {k: v for k, v in payload.items() if v is not None}


class ProvisionResult(BaseModel):
    success: bool = True
    user_id: Optional[str] = None
    email: Optional[str] = None
    credits: int = 20
    login_url: Optional[str] = None
    already_exists: bool = False


class TrialStartResult(ProvisionResult):
    pipeline_id: UUID
    followup_variant: Variant
