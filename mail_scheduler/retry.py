"""Bounded retry bookkeeping for scheduled sends."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import ScheduledSendRow
from .persistence import Persistence

MAX_RETRIES = 3
REJECTED_MESSAGE = "SMTP send returned false"


class FailureKind(str, Enum):
    """Why a delivery attempt did not succeed."""

    REJECTED = "rejected"  # transport answered False
    EXCEPTION = "exception"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class DeliveryFailure:
    """Outcome of a failed delivery attempt, whatever shape the error had."""

    kind: FailureKind
    detail: str = ""

    @classmethod
    def rejected(cls) -> "DeliveryFailure":
        return cls(FailureKind.REJECTED)

    @classmethod
    def timed_out(cls, timeout: float) -> "DeliveryFailure":
        return cls(FailureKind.TIMEOUT, f"{timeout:g}")

    @classmethod
    def from_exception(cls, exc: BaseException) -> "DeliveryFailure":
        detail = str(exc) or type(exc).__name__
        return cls(FailureKind.EXCEPTION, detail)

    def render(self) -> str:
        """Return the short message persisted and reported for this failure."""
        if self.kind is FailureKind.REJECTED:
            return REJECTED_MESSAGE
        if self.kind is FailureKind.TIMEOUT:
            return f"Delivery timed out after {self.detail}s"
        return self.detail


@dataclass(frozen=True)
class RetryDecision:
    retry_count: int
    terminal: bool
    error_message: Optional[str] = None


class RetryPolicy:
    """Decide whether a failed send goes back to ``pending`` or ends as ``failed``."""

    def __init__(self, max_retries: int = MAX_RETRIES):
        self.max_retries = max(1, int(max_retries))

    def decide(self, retry_count: int, failure: DeliveryFailure) -> RetryDecision:
        next_retry_count = retry_count + 1
        if next_retry_count >= self.max_retries:
            return RetryDecision(next_retry_count, True, failure.render())
        return RetryDecision(next_retry_count, False)

    async def apply(
        self, persistence: Persistence, row: ScheduledSendRow, failure: DeliveryFailure
    ) -> RetryDecision:
        """Persist the decision for ``row``.

        Terminal decisions store the error message; the others only bump the
        counter, so the row is picked up again by the next poll.
        """
        decision = self.decide(row.retry_count, failure)
        if decision.terminal:
            await persistence.fail_scheduled_send(row.id, decision.retry_count, decision.error_message or "")
        else:
            await persistence.requeue_scheduled_send(row.id, decision.retry_count)
        return decision
