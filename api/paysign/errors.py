from typing import Any, Dict, Optional


class PaySignError(Exception):
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class ValidationError(PaySignError):
    """Malformed or missing input."""
    status_code = 400


class IdentityVerificationError(ValidationError):
    def __init__(self, reason: Optional[str]):
        super().__init__("Identity verification failed", reason=reason)


class NotFoundError(PaySignError):
    status_code = 404


class ForbiddenError(PaySignError):
    status_code = 403


class StateConflictError(PaySignError):
    """Operation not valid for the current document, recipient or field state."""
    status_code = 400


class PaymentRequiredError(PaySignError):
    status_code = 402

    def __init__(self, message: str, challenge_header: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.challenge_header = challenge_header


class ExternalServiceError(PaySignError):
    status_code = 502


class RenderFailure(PaySignError):
    """Finalization could not produce the artifact; the document stays pending."""
    status_code = 500
