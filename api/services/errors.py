"""Domain errors raised by the subscription lifecycle and mapped to HTTP by the routers."""


class SubscriptionError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: int | None = None, **extra):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra

    def to_detail(self) -> dict:
        return {"success": False, "message": self.message, **self.extra}


class NotFoundError(SubscriptionError):
    status_code = 404


class ConflictError(SubscriptionError):
    status_code = 409


class RefundWindowExpired(SubscriptionError):
    status_code = 422


class InvalidSignature(SubscriptionError):
    status_code = 400


class ForbiddenError(SubscriptionError):
    status_code = 403


class UpstreamError(SubscriptionError):
    """Gateway call failed; nothing was persisted so the request can be retried."""

    status_code = 502
