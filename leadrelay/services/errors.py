"""Error taxonomy for the message pipeline."""


class LeadRelayError(Exception):
    pass


class MalformedPayloadError(LeadRelayError):
    """Webhook payload could not be interpreted. Never escapes ingress."""


class AgentTurnError(LeadRelayError):
    def __init__(self, role: str, message: str):
        self.role = role
        super().__init__(f"Agent {role} failed: {message}")


class DeliveryFailedError(LeadRelayError):
    """Outbound send exhausted its retries."""

    def __init__(self, recipient: str, attempts: int, last_error: str | None = None):
        self.recipient = recipient
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Delivery to {recipient} failed after {attempts} attempts: {last_error}")


class PersistenceError(LeadRelayError):
    """Durable state could not be read or written. Always propagates."""

    def __init__(self, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Persistence failure during {operation}: {cause}")
