"""Custom exceptions for the federated learning core.

This module defines the error taxonomy shared by training, validation,
aggregation and round coordination. Errors carry the participant and round
they concern so rejections can be audited.
"""

from typing import Optional


class FederatedError(Exception):
    """Base exception for all federated learning errors."""

    pass


class ShapeError(FederatedError, ValueError):
    """Exception raised when a structure does not match the model topology."""

    def __init__(self, message: str, participant_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.participant_id = participant_id


class BudgetExhausted(FederatedError):
    """Exception raised when a node's privacy budget cannot cover another round.

    This is a hard stop: the node must not participate again until an
    operator resets its budget.
    """

    def __init__(self, consumed: float, requested: float, total: float) -> None:
        super().__init__(
            f"Privacy budget exhausted: consumed={consumed:.6f}, "
            f"requested={requested:.6f}, total={total:.6f}"
        )
        self.consumed = consumed
        self.requested = requested
        self.total = total


class RoundError(FederatedError):
    """Base exception for failures that abort a single aggregation round."""

    def __init__(self, message: str, round_number: Optional[int] = None) -> None:
        super().__init__(message)
        self.round_number = round_number


class InsufficientParticipants(RoundError):
    """Exception raised when fewer valid updates than the quorum remain."""

    def __init__(
        self, required: int, received: int, round_number: Optional[int] = None
    ) -> None:
        super().__init__(
            f"Insufficient participants: need {required}, got {received}",
            round_number=round_number,
        )
        self.required = required
        self.received = received


class AllParticipantsRejected(RoundError):
    """Exception raised when anomaly screening removes every survivor."""

    pass


class SuspectedPoisoning(FederatedError):
    """Advisory signal that an aggregated update may be poisoned."""

    def __init__(self, message: str, performance_drop: float = 0.0) -> None:
        super().__init__(message)
        self.performance_drop = performance_drop


class TransportError(FederatedError):
    """Exception raised when the transport fails to deliver (retryable)."""

    pass


class NetworkTimeout(TransportError):
    """Exception raised when a network round trip exceeds its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:.1f}s")
        self.operation = operation
        self.timeout = timeout


class InvalidStateTransition(FederatedError):
    """Exception raised when the round state machine is driven out of order."""

    pass
