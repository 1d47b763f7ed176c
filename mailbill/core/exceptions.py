class ServiceError(Exception):
    """Base class for service-layer errors.

    Each subclass carries the HTTP status the API layer responds with and a
    stable machine-readable code for the error envelope.
    """

    status_code: int = 400

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or "service_error"
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ServiceError):
    status_code = 400

    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class ForbiddenError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="forbidden")


class ConflictError(ServiceError):
    status_code = 409

    def __init__(self, message: str = "Conflict", *, code: str = "conflict"):
        super().__init__(message, code=code)


class MailboxAlreadyExistsError(ConflictError):
    def __init__(self, email: str):
        super().__init__(f"Mailbox {email} already exists", code="mailbox_already_exists")
        self.email = email


class InsufficientBalanceError(ServiceError):
    status_code = 402

    def __init__(self, message: str = "Insufficient wallet balance"):
        super().__init__(message, code="insufficient_balance")


class NoActiveSubscriptionError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "No active subscription found. Please purchase a subscription first."):
        super().__init__(message, code="no_active_subscription")


class NoCapacityError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Mailbox limit reached. Please purchase additional mailboxes."):
        super().__init__(message, code="no_capacity")


class UpstreamError(ServiceError):
    """Payment gateway, registrar or DNS provider failure.

    ``correctable`` failures (declined card, bad input echoed back by the
    provider) are reported as 400, everything else as 502.
    """

    def __init__(self, message: str = "Upstream provider error", *, correctable: bool = False, details: dict | None = None):
        super().__init__(message, code="upstream_error", status_code=400 if correctable else 502)
        self.details = details or {}


class InternalError(ServiceError):
    status_code = 500

    def __init__(self, message: str = "Internal error"):
        super().__init__(message, code="internal_error")
