"""Revision ceiling and rejection-reason rules. Pure functions, no I/O."""

from photo_escrow.exceptions import RevisionLimitReached, ValidationError
from photo_escrow.models.escrow import EscrowStatus


def require_rejection_reason(reason: str | None) -> str:
    """Return the stripped reason, or raise ValidationError when blank."""
    if reason is None or not reason.strip():
        raise ValidationError(
            "A reason is required when rejecting a delivery",
            error_code="REJECTION_REASON_REQUIRED",
        )
    return reason.strip()


def check_revision_budget(revision_count: int, max_revisions: int) -> None:
    """Raise RevisionLimitReached when no revision is left to grant."""
    if revision_count >= max_revisions:
        raise RevisionLimitReached(
            f"Revision limit reached ({revision_count}/{max_revisions})",
            details={"revision_count": revision_count, "max_revisions": max_revisions},
        )


def can_request_revision(status: EscrowStatus, revision_count: int, max_revisions: int) -> bool:
    return status == EscrowStatus.WAITING_CONFIRMATION and revision_count < max_revisions
