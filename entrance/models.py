from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ----------------------------- Enumerations -----------------------------
class MemberStatus(str, Enum):
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


class ValidationStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRING_SOON = "expiring_soon"


class EntranceType(str, Enum):
    QR_SCAN = "qr_scan"
    MANUAL = "manual"


class Outcome(str, Enum):
    """Fine-grained result of one check-in attempt."""
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    CONNECTION_ERROR = "connection_error"
    UNPARSABLE = "unparsable"


# ----------------------------- Records -----------------------------
class Member(BaseModel):
    # status stays a plain string: unknown values must reach the evaluator
    id: int
    name: str = ""
    phone: str = ""
    email: Optional[str] = None
    status: str
    expiry: Optional[str] = None
    package: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    member: Optional[Member] = None
    message: str
    reason: Optional[str] = None
    outcome: Outcome

    @property
    def validation_status(self) -> ValidationStatus:
        if self.outcome == Outcome.EXPIRING_SOON:
            return ValidationStatus.EXPIRING_SOON
        return ValidationStatus.VALID if self.valid else ValidationStatus.INVALID


class EntranceLogInput(BaseModel):
    member_id: Optional[int] = None
    member_name: str = ""
    member_phone: str = ""
    member_status: Optional[str] = None
    validation_status: ValidationStatus
    validation_message: str
    entrance_type: EntranceType
    notes: Optional[str] = None
    outcome: Optional[Outcome] = None
    raw_token: Optional[str] = None


class EntranceLog(EntranceLogInput):
    id: int
    timestamp: datetime


class CheckInResult(BaseModel):
    """What a capture source gets back after one pass through the pipeline."""
    result: ValidationResult
    log: EntranceLog
    member_id: Optional[int] = None
    strategy: Optional[str] = None
    handled_at: datetime = Field(default_factory=lambda: datetime.now().astimezone())
