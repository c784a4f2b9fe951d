"""Error taxonomy for the subscription billing core."""


class BillingError(Exception):
    """Base class for all billing errors."""


class VerificationError(BillingError):
    """Webhook signature or certificate could not be verified."""


class MalformedEvent(BillingError):
    """Verified webhook whose body lacks required fields."""


class OrphanEvent(BillingError):
    """Verified webhook referencing no known local attempt."""

    def __init__(self, resource_id: str):
        super().__init__(f"No attempt for processor subscription {resource_id}")
        self.resource_id = resource_id


class TransitionConflict(BillingError):
    """Terminal event contradicting an already different terminal state."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Attempt already {current}, refusing {requested}")
        self.current = current
        self.requested = requested


class ProcessorApiError(BillingError):
    """Failure talking to the payment processor."""

    def __init__(self, message: str, status_code: int | None = None, body=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    def user_message(self) -> str:
        """Short, user-facing description (PayPal ``name: message`` when available)."""
        if isinstance(self.body, dict) and self.body.get("name"):
            return f"{self.body['name']}: {self.body.get('message', '')}".rstrip(": ")
        return self.message


class AuthError(ProcessorApiError):
    """Processor rejected our credentials, or none are configured."""


class InvalidPlan(ProcessorApiError):
    """Processor does not recognise the plan id."""


class NetworkError(ProcessorApiError):
    """Transport failure or timeout; retryable by the caller."""


class MalformedResponse(ProcessorApiError):
    """Processor answered without a usable id or approval link."""
