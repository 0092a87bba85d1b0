"""
Error taxonomy shared by every saga participant.

ValidationError and NotFoundOk are business outcomes: handlers resolve them
locally and the message is acknowledged. TransientInfraError and anything
unexpected lead to redelivery. FatalInconsistency needs an operator or the
payment side to step in.
"""


class SagaError(Exception):
    """Base class for every error raised by the fulfillment services."""


class ValidationError(SagaError):
    """A business rule rejected the request. Never retried."""


class InsufficientStock(ValidationError):
    def __init__(self, shortfalls):
        self.shortfalls = list(shortfalls)
        parts = [
            f"{s.product_id}{'/' + s.variant_id if s.variant_id else ''}: requested {s.requested}, available {s.available}"
            for s in self.shortfalls
        ]
        super().__init__("Insufficient stock for " + "; ".join(parts))


class StockContention(ValidationError):
    """Check-and-reserve kept losing the optimistic race."""


class UsageLimitExceeded(ValidationError):
    pass


class DiscountRejected(ValidationError):
    pass


class InvalidStateTransition(ValidationError):
    def __init__(self, order_id, current, target):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id}: cannot move from {_name(current)} to {_name(target)}")


class ConcurrencyConflict(SagaError):
    """Lost an optimistic-concurrency race; the caller retries."""


class NotFoundOk(SagaError):
    """Expected absence, handled as a successful no-op."""


class TransientInfraError(SagaError):
    """Broker, store or peer service unreachable."""


class FatalInconsistency(SagaError):
    """State that cannot be repaired automatically."""


def _name(status):
    return getattr(status, "value", status)
