"""
Error taxonomy for the marketplace core.

Every error carries a stable machine readable ``code`` and a human message.
The HTTP layer renders them as ``{"detail": message, "code": code, ...}``.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **extra: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotVerifiedError(ForbiddenError):
    code = "NOT_VERIFIED"

    HINTS = {
        "unverified": "Please submit your verification documents",
        "pending": "Your verification is under review. Please wait for approval.",
    }
    DEFAULT_HINT = "Your verification was rejected. Please check your verification status for details."

    def __init__(self, verification_status: str):
        super().__init__(
            "Your seller account must be verified to perform this action",
            verification_status=verification_status,
            hint=self.HINTS.get(verification_status, self.DEFAULT_HINT),
        )
        self.verification_status = verification_status


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    status_code = 400
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str):
        super().__init__(
            f"Cannot move from '{current}' to '{requested}'",
            current_status=current,
            requested_status=requested,
        )


class CouponRejectedError(AppError):
    """Raised only by the validate endpoint; order creation never sees it."""
    status_code = 400

    def __init__(self, reason: str, message: str):
        super().__init__(message, code=reason)
        if reason == "COUPON_NOT_FOUND":
            self.status_code = 404


class UnavailableError(AppError):
    status_code = 503
    code = "UNAVAILABLE"
