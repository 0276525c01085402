"""Aggregation server round management.

This module provides the server-side functionality:
- An append-only, lock-guarded accumulator for one round's updates
- Round orchestration that aggregates only once the round closes
- Per-participant trust scores
- An in-process transport connecting nodes to the server
"""

import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
import structlog

from sentinel_fl.aggregation import AggregationMethod, AggregationResult, RobustAggregator
from sentinel_fl.exceptions import RoundError, TransportError
from sentinel_fl.topology import ParameterTree, Topology
from sentinel_fl.updates import GradientUpdate
from sentinel_fl.validation import GradientValidator

logger = structlog.get_logger(__name__)


@dataclass
class TrustScore:
    """Running reliability signal for one participant.

    Informs admission policy only; aggregation never reads it.
    """

    participant_id: str
    score: float = 1.0
    rounds: int = 0
    rejections: int = 0

    def record(self, signal: float, decay: float = 0.9) -> float:
        """Blend a new signal in [0, 1] into the exponential moving average."""
        self.score = decay * self.score + (1 - decay) * float(np.clip(signal, 0.0, 1.0))
        self.rounds += 1
        if signal <= 0:
            self.rejections += 1
        return self.score


class RoundCollector:
    """Accumulates one round's updates until the round closes.

    The accumulator is append-only and guarded by a lock, so concurrent
    submitters can never interleave with aggregation.
    """

    def __init__(
        self,
        round_number: int,
        expected: int,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize collector.

        Args:
            round_number: Round being collected
            expected: Number of submissions that makes the round ready
            deadline_seconds: Seconds after which the round is ready regardless
            clock: Monotonic clock
        """
        self.round_number = round_number
        self.expected = expected
        self._clock = clock
        self._deadline = None if deadline_seconds is None else clock() + deadline_seconds
        self._lock = threading.Lock()
        self._updates: list[GradientUpdate] = []
        self._participants: set[str] = set()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __len__(self) -> int:
        with self._lock:
            return len(self._updates)

    def submit(self, update: GradientUpdate) -> bool:
        """Append an update; returns False when it cannot be accepted."""
        with self._lock:
            if self._closed:
                reason = "round_closed"
            elif update.round != self.round_number:
                reason = "wrong_round"
            elif update.participant_id in self._participants:
                reason = "duplicate_participant"
            else:
                self._updates.append(update)
                self._participants.add(update.participant_id)
                return True

        logger.warning(
            "submission_refused",
            participant_id=update.participant_id,
            round=self.round_number,
            update_round=update.round,
            reason=reason,
        )
        return False

    def deadline_elapsed(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def is_ready(self) -> bool:
        """True once every expected update arrived or the deadline passed."""
        with self._lock:
            if self._closed:
                return False
            received = len(self._updates)
        return received >= self.expected or self.deadline_elapsed()

    def close(self) -> list[GradientUpdate]:
        """Stop accepting submissions and hand over the batch."""
        with self._lock:
            self._closed = True
            return list(self._updates)

    def cancel(self) -> int:
        """Close the round and discard partial submissions."""
        with self._lock:
            discarded = len(self._updates)
            self._closed = True
            self._cancelled = True
            self._updates.clear()
            self._participants.clear()
        return discarded


@dataclass
class RoundRecord:
    """Information about a finished round."""

    round_number: int
    submitted: int
    status: str  # "aggregated", "aborted" or "cancelled"
    result: Optional[AggregationResult] = None
    error: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        """Generate summary of the round."""
        lines = [
            f"Round {self.round_number}: {self.status}",
            f"  Submitted: {self.submitted}",
        ]
        if self.result is not None:
            lines.append(f"  Survivors: {len(self.result.survivors)}")
            if self.result.selected_participant is not None:
                lines.append(f"  Selected: {self.result.selected_participant}")
        if self.error:
            lines.append(f"  Error: {self.error}")
        return "\n".join(lines)


class AggregationServer:
    """Collects and robustly aggregates updates round by round.

    Handles:
    - Opening and closing rounds
    - Aggregating a closed round as a single batch
    - Trust score bookkeeping
    """

    def __init__(
        self,
        aggregator: RobustAggregator,
        trust_decay: float = 0.9,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize aggregation server.

        Args:
            aggregator: Robust aggregator applied to each closed round
            trust_decay: Decay of the trust score moving average
            clock: Monotonic clock used for round deadlines
        """
        self.aggregator = aggregator
        self.trust_decay = trust_decay
        self._clock = clock
        self._collector: Optional[RoundCollector] = None
        self._lock = threading.Lock()
        self.trust_scores: dict[str, TrustScore] = {}
        self.history: list[RoundRecord] = []
        self.logger = logger.bind(component="AggregationServer")

    @property
    def topology(self) -> Topology:
        return self.aggregator.topology

    @property
    def current_round(self) -> Optional[int]:
        return None if self._collector is None else self._collector.round_number

    def open_round(
        self,
        round_number: int,
        expected: Optional[int] = None,
        deadline_seconds: Optional[float] = 30.0,
    ) -> RoundCollector:
        """Start collecting updates for a round.

        Args:
            round_number: Round to open
            expected: Submissions that make the round ready. When omitted the
                round closes as soon as ``min_quorum`` updates arrive and later
                participants are refused; pass the federation size to wait for
                everyone until the deadline.
            deadline_seconds: Round deadline

        Returns:
            The round's collector
        """
        with self._lock:
            if self._collector is not None and not self._collector.closed:
                msg = f"Round {self._collector.round_number} is still open"
                raise RoundError(msg, round_number=self._collector.round_number)
            self._collector = RoundCollector(
                round_number,
                expected=expected if expected is not None else self.aggregator.min_quorum,
                deadline_seconds=deadline_seconds,
                clock=self._clock,
            )

        self.logger.info(
            "round_opened",
            round=round_number,
            expected=self._collector.expected,
            deadline_seconds=deadline_seconds,
        )
        return self._collector

    def submit(self, update: GradientUpdate) -> bool:
        """Add an update to the open round."""
        collector = self._collector
        if collector is None:
            self.logger.warning(
                "submission_refused",
                participant_id=update.participant_id,
                reason="no_open_round",
            )
            return False
        return collector.submit(update)

    def is_ready(self) -> bool:
        return self._collector is not None and self._collector.is_ready()

    def cancel_round(self) -> int:
        """Abandon the open round, discarding its submissions."""
        collector = self._collector
        if collector is None or collector.closed:
            return 0
        discarded = collector.cancel()
        self.history.append(
            RoundRecord(round_number=collector.round_number, submitted=discarded, status="cancelled")
        )
        self.logger.info("round_cancelled", round=collector.round_number, discarded=discarded)
        return discarded

    def close_round(self) -> AggregationResult:
        """Close the open round and aggregate it as one batch.

        Returns:
            Aggregation result

        Raises:
            RoundError: No open round, or the aggregator aborted the round
        """
        collector = self._collector
        if collector is None or collector.closed:
            msg = "No open round to close"
            raise RoundError(msg)

        updates = collector.close()
        round_number = collector.round_number

        try:
            result = self.aggregator.aggregate(updates, round_number)
        except RoundError as e:
            self.history.append(
                RoundRecord(
                    round_number=round_number,
                    submitted=len(updates),
                    status="aborted",
                    error=str(e),
                )
            )
            raise

        self._record_trust(result)
        self.history.append(
            RoundRecord(
                round_number=round_number,
                submitted=len(updates),
                status="aggregated",
                result=result,
            )
        )
        self.logger.info(
            "round_complete",
            round=round_number,
            survivors=len(result.survivors),
            rejected=len(result.rejected),
        )
        return result

    def _record_trust(self, result: AggregationResult) -> None:
        for pid in result.participants:
            score = self.trust_scores.setdefault(pid, TrustScore(participant_id=pid))
            if pid in result.rejected:
                signal = 0.0
            elif result.selected_participant is None or pid == result.selected_participant:
                signal = 1.0
            else:
                signal = 0.75
            score.record(signal, self.trust_decay)

    def get_summary(self) -> dict[str, Any]:
        """Get summary of aggregation activity."""
        if not self.history:
            return {"status": "no_rounds"}
        aggregated = [r for r in self.history if r.status == "aggregated"]
        return {
            "total_rounds": len(self.history),
            "aggregated_rounds": len(aggregated),
            "aborted_rounds": sum(1 for r in self.history if r.status == "aborted"),
            "cancelled_rounds": sum(1 for r in self.history if r.status == "cancelled"),
            "method": self.aggregator.method.value,
            "trust_scores": {pid: t.score for pid, t in sorted(self.trust_scores.items())},
        }


class InMemoryTransport:
    """In-process transport between nodes and an :class:`AggregationServer`.

    A round is aggregated as soon as it is ready after a submission, or when
    :meth:`finish_round` is called (e.g. by the deadline timer).
    """

    def __init__(self, server: AggregationServer) -> None:
        self.server = server
        self._results: dict[int, asyncio.Future] = {}
        self._latest_opened: Optional[int] = None

    def _future(self, round_number: int) -> asyncio.Future:
        if round_number not in self._results:
            self._results[round_number] = asyncio.get_running_loop().create_future()
        return self._results[round_number]

    def _prune(self, before: int) -> None:
        # waiters already awaiting a dropped future keep their own reference
        for number in [n for n, f in self._results.items() if n < before and f.done()]:
            del self._results[number]

    def open_round(
        self,
        round_number: int,
        expected: Optional[int] = None,
        deadline_seconds: Optional[float] = 30.0,
    ) -> None:
        """Open a round and arm its deadline timer on the running loop.

        Results of earlier, finished rounds are dropped. ``expected`` defaults
        to the aggregator's quorum, see :meth:`AggregationServer.open_round`.
        """
        self.server.open_round(round_number, expected, deadline_seconds)
        self._prune(round_number)
        self._latest_opened = round_number
        future = self._future(round_number)
        if deadline_seconds is not None:
            handle = asyncio.get_running_loop().call_later(
                deadline_seconds, self.finish_round, round_number
            )
            future.add_done_callback(lambda _: handle.cancel())

    async def submit(self, update: GradientUpdate) -> None:
        if not self.server.submit(update):
            msg = f"Update from {update.participant_id} refused for round {update.round}"
            raise TransportError(msg)
        if self.server.is_ready():
            self.finish_round(update.round)

    async def receive_global(self, round_number: int) -> ParameterTree:
        if (
            round_number not in self._results
            and self._latest_opened is not None
            and round_number < self._latest_opened
        ):
            msg = f"Round {round_number} is over; round {self._latest_opened} is current"
            raise RoundError(msg, round_number=round_number)
        # shield: a timed-out receiver must not cancel the shared result
        result: AggregationResult = await asyncio.shield(self._future(round_number))
        return result.gradients

    def finish_round(self, round_number: int) -> None:
        """Aggregate the round now and deliver the outcome to every waiter."""
        future = self._future(round_number)
        if future.done() or self.server.current_round != round_number:
            return
        try:
            future.set_result(self.server.close_round())
        except RoundError as e:
            future.set_exception(e)

    def cancel_round(self, round_number: int) -> None:
        self.server.cancel_round()
        future = self._future(round_number)
        if not future.done():
            future.cancel()


def create_aggregation_server(
    topology: Topology,
    method: str = "krum",
    honest_fraction: float = 0.6,
    anomaly_std_threshold: float = 2.0,
    trim_ratio: float = 0.2,
    min_quorum: int = 3,
    min_magnitude: float = 0.001,
    max_magnitude: float = 100.0,
) -> AggregationServer:
    """Factory function to create an aggregation server.

    Args:
        topology: Model topology
        method: Aggregation method ("krum", "trimmed_mean", "median")
        honest_fraction: Assumed honest fraction for KRUM
        anomaly_std_threshold: Anomaly screen multiplier
        trim_ratio: Trimmed-mean ratio
        min_quorum: Minimum valid updates per round
        min_magnitude: Smallest accepted update norm
        max_magnitude: Largest accepted update norm

    Returns:
        Configured AggregationServer instance
    """
    validator = GradientValidator(topology, min_magnitude, max_magnitude)
    aggregator = RobustAggregator(
        topology,
        method=AggregationMethod.parse(method),
        honest_fraction=honest_fraction,
        anomaly_std_threshold=anomaly_std_threshold,
        trim_ratio=trim_ratio,
        min_quorum=min_quorum,
        validator=validator,
    )
    return AggregationServer(aggregator)
