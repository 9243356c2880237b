from __future__ import annotations

import logging
from typing import Optional

from .models import Member, MemberStatus, Outcome, ValidationResult
from .stores import MemberStore

log = logging.getLogger("entrance.authorize")

MSG_CONNECTION_ERROR = "Connection Error"
MSG_INVALID_QR = "Invalid QR Code"
MSG_EXPIRED = "Expired Subscription"
MSG_EXPIRING_SOON = "Active Subscription (Expiring Soon)"
MSG_ACTIVE = "Active Subscription"
MSG_INVALID_STATUS = "Invalid Status"
MSG_UNRECOGNIZED = "Unrecognized Code"


def connection_error(reason: str) -> ValidationResult:
    return ValidationResult(
        valid=False, message=MSG_CONNECTION_ERROR, reason=reason, outcome=Outcome.CONNECTION_ERROR
    )


def unrecognized_code() -> ValidationResult:
    """Result for a token from which no member id could be recovered."""
    return ValidationResult(
        valid=False,
        message=MSG_UNRECOGNIZED,
        reason="The scanned code does not contain a member ID",
        outcome=Outcome.UNPARSABLE,
    )


def decide(member: Member) -> ValidationResult:
    """Map a found member's subscription status onto a decision."""
    status = (member.status or "").strip().lower()
    if status == MemberStatus.EXPIRED.value:
        return ValidationResult(
            valid=False, member=member, message=MSG_EXPIRED,
            reason=f"Subscription expired on {member.expiry}", outcome=Outcome.EXPIRED,
        )
    if status == MemberStatus.EXPIRING_SOON.value:
        return ValidationResult(
            valid=True, member=member, message=MSG_EXPIRING_SOON,
            reason=f"Subscription expires on {member.expiry}", outcome=Outcome.EXPIRING_SOON,
        )
    if status == MemberStatus.ACTIVE.value:
        return ValidationResult(valid=True, member=member, message=MSG_ACTIVE, outcome=Outcome.ACTIVE)
    return ValidationResult(
        valid=False, member=member, message=MSG_INVALID_STATUS,
        reason="Subscription status is not valid", outcome=Outcome.INVALID_STATUS,
    )


class AuthorizationEvaluator:
    """
    Looks a member id up and decides whether entry is allowed.
    Never raises: store problems come back as a Connection Error result.
    """

    def __init__(self, member_store: Optional[MemberStore]):
        self.member_store = member_store

    async def evaluate(self, member_id: int) -> ValidationResult:
        if self.member_store is None:
            return connection_error("Database connection is not available")
        try:
            member = await self.member_store.get_member_by_id(member_id)
        except Exception as e:
            log.warning("member_lookup_failed", extra={"member_id": member_id, "error": repr(e)})
            return connection_error("Error communicating with the database")
        if member is None:
            return ValidationResult(
                valid=False, message=MSG_INVALID_QR,
                reason="No member found with this ID", outcome=Outcome.NOT_FOUND,
            )
        return decide(member)
