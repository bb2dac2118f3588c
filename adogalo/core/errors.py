"""
ESCROW CORE - ERROR TAXONOMY

Every failure of a core operation is raised as an EscrowError subclass.
The API layer maps them to {"success": False, "message", "reason", ...}.

Kinds:
- Authorization   -> AuthorizationError
- State guard     -> StateGuardError
- Funds           -> InsufficientFundsError
- Validation      -> EscrowValidationError
- Not found       -> NotFoundError
- Ledger          -> InvariantViolationError
- Lost race       -> ConcurrencyConflictError
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base class for every expected business failure."""

    reason = "error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "message": self.message,
            "reason": self.reason,
        }
        body.update(self.details)
        return body


class AuthorizationError(EscrowError):
    reason = "forbidden"
    status_code = 403


class EscrowValidationError(EscrowError):
    reason = "validation_failed"
    status_code = 400


class NotFoundError(EscrowError):
    reason = "not_found"
    status_code = 404


class StateGuardError(EscrowError):
    """Entity is not in the status the requested transition needs."""

    reason = "invalid_state"
    status_code = 400


class InsufficientFundsError(EscrowError):
    """Expected business outcome, carries the numeric shortfall."""

    reason = "insufficient_funds"
    status_code = 400

    def __init__(self, message: str, required_funds: float, available: float, shortage: float):
        super().__init__(
            message,
            details={
                "needs_deposit": True,
                "required_funds": required_funds,
                "available": available,
                "shortage": shortage,
            },
        )
        self.required_funds = required_funds
        self.available = available
        self.shortage = shortage


class InvariantViolationError(EscrowError):
    """Raised when a ledger mutation would break a financial invariant."""

    reason = "invariant_violation"
    status_code = 400

    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        super().__init__(message, details={"violation_type": violation_type, **(details or {})})


class ConcurrencyConflictError(EscrowError):
    """A concurrent writer changed the row between read and write."""

    reason = "concurrent_modification"
    status_code = 409
