"""
Domain exceptions for the inheritance engine.

Every engine error carries an HTTP status and a public message. The public
message is what leaves the process; the exception text itself is for logs.
Claim-facing errors deliberately share three public messages so a caller
cannot learn which field or rule rejected the request.
"""

from typing import Optional

from fastapi import status


NOT_YET_CLAIMABLE = "Plan is not yet claimable"
INVALID_CLAIM_DETAILS = "Invalid claim code or beneficiary details"
ALREADY_CLAIMED_MESSAGE = "This inheritance has already been claimed"


class EngineError(Exception):
    """Base class for all engine errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    public_message: str = "Request could not be processed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


# --- Validation errors: rejected synchronously, never partially applied ---

class ValidationError(EngineError):
    public_message = "Invalid request"


class PercentageMismatch(ValidationError):
    public_message = "Beneficiary percentages must total 100% (10000 basis points)"


class TooFewBeneficiaries(ValidationError):
    public_message = "At least one beneficiary is required"


class TooManyBeneficiaries(ValidationError):
    public_message = "A plan can have at most 10 beneficiaries"


class InvalidPercentage(ValidationError):
    public_message = "Periodic percentage must evenly divide 100"


class InvalidSchedule(ValidationError):
    public_message = "Invalid distribution schedule"


class InvalidAmount(ValidationError):
    public_message = "Invalid amount"


class EscrowOverdraw(InvalidAmount):
    public_message = "Release would exceed the escrowed amount"


# --- Lookup errors ---

class NotFound(EngineError):
    status_code = status.HTTP_404_NOT_FOUND
    public_message = "Not found"


class PlanNotFound(NotFound):
    public_message = "Plan not found"


class BeneficiaryNotFound(NotFound):
    public_message = "Beneficiary not found"


class DistributionNotFound(NotFound):
    public_message = "Distribution not found"


# --- State errors: rejected with no side effects ---

class StateError(EngineError):
    status_code = status.HTTP_409_CONFLICT
    public_message = "Operation not allowed in the current state"


class InvalidState(StateError):
    pass


class PartialClaimExists(StateError):
    public_message = "Plan cannot be cancelled after funds have been released"


class PlanLocked(StateError):
    public_message = "Plan is being processed, try again shortly"


class PlanNotClaimable(StateError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = NOT_YET_CLAIMABLE


class AlreadyClaimed(StateError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = ALREADY_CLAIMED_MESSAGE


# --- Client-input cryptographic errors, always reported generically ---

class InvalidClaimCode(EngineError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = INVALID_CLAIM_DETAILS


class CipherError(EngineError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = INVALID_CLAIM_DETAILS


class InvalidVerificationToken(EngineError):
    status_code = status.HTTP_400_BAD_REQUEST
    public_message = "Verification link is invalid or has already been used"


# --- External-call errors: retried by the scheduler, alerted when exhausted ---

class LedgerError(EngineError):
    status_code = status.HTTP_502_BAD_GATEWAY
    public_message = "Ledger service unavailable"


class LedgerTimeout(LedgerError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    public_message = "Ledger service timed out"


class ItemTimeout(LedgerTimeout):
    """Raised when processing a single scheduler item overruns its budget."""
    public_message = "Processing timed out"
