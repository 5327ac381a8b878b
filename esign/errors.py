from typing import Optional


class ESignError(Exception):
    """Base for failures surfaced to callers as typed results."""

    kind = "error"
    status_code = 400

    def __init__(self, message: str, entity_id: Optional[int] = None, event: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id
        self.event = event

    def as_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "entity_id": self.entity_id,
            "event": self.event,
        }


class NotFoundError(ESignError):
    kind = "not_found"
    status_code = 404


class InvalidStateError(ESignError):
    kind = "invalid_state"
    status_code = 409


class ValidationError(ESignError):
    kind = "validation"
    status_code = 422


class ExpiredError(ESignError):
    kind = "expired"
    status_code = 410


class InvalidCodeError(ESignError):
    kind = "invalid_code"
    status_code = 400


class UnverifiedError(ESignError):
    kind = "unverified"
    status_code = 401


class RenderError(ESignError):
    # recovered inside the certification engine, never returned to callers
    kind = "render"
    status_code = 500
