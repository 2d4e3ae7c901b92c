"""
Typed errors raised by the voting core.

Every error carries a code from a closed vocabulary plus structured details.
The HTTP layer maps codes to status codes; nothing here knows about HTTP.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_VOTED = "already_voted"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    NOT_AUTHORIZED = "not_authorized"
    CONSISTENCY_ERROR = "consistency_error"


class VotingError(Exception):
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


class NotEligibleError(VotingError):
    code = ErrorCode.NOT_ELIGIBLE
    default_message = "Election not open"


class AlreadyVotedError(VotingError):
    code = ErrorCode.ALREADY_VOTED
    default_message = "Already voted"


class ValidationError(VotingError):
    code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid selections"


class ConflictError(VotingError):
    """Lost a compare-and-set race against a concurrent writer."""

    code = ErrorCode.CONFLICT
    default_message = "Concurrent update conflict"


class NotFoundError(VotingError):
    code = ErrorCode.NOT_FOUND
    default_message = "No election configured"


class PreconditionError(VotingError):
    code = ErrorCode.PRECONDITION_FAILED
    default_message = "Precondition failed"


class NotAuthorizedError(VotingError):
    code = ErrorCode.NOT_AUTHORIZED
    default_message = "Admin only"


class ConsistencyError(VotingError):
    """A vote was written but the ballot could not be completed (or vice versa).

    Needs a reconciliation sweep; never retried automatically.
    """

    code = ErrorCode.CONSISTENCY_ERROR
    default_message = "Vote recorded but ballot completion failed"
