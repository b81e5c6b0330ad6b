import asyncio
import logging
from collections import Counter, deque

import ledgerbench.constants as C
from ledgerbench.models import SubmissionOutcome

log = logging.getLogger("ledgerbench.tracker")


class SubmissionTracker:
    """Append-only record of every submission outcome in a run."""

    def __init__(self, failure_samples: int = C.FAILURE_SAMPLES) -> None:
        self._lock = asyncio.Lock()
        self._outcomes: list[SubmissionOutcome] = []
        self._accepted: list[str] = []
        self.count_by_outcome: Counter[str] = Counter()
        self.failures_by_reason: Counter[str] = Counter()
        self.failure_samples: deque[str] = deque(maxlen=failure_samples)
        self._sampled_reasons: set[str] = set()

    async def record(self, outcome: SubmissionOutcome) -> None:
        async with self._lock:
            self._outcomes.append(outcome)
            self.count_by_outcome[outcome.outcome] += 1
            if outcome.accepted:
                self._accepted.append(outcome.handle)
                return
            reason = outcome.reason or "unknown"
            self.failures_by_reason[reason] += 1
            # Prefer distinct messages; the deque caps how many we keep
            if reason not in self._sampled_reasons and len(self.failure_samples) < self.failure_samples.maxlen:
                self._sampled_reasons.add(reason)
                self.failure_samples.append(reason)

    def accepted_handles(self) -> list[str]:
        """Snapshot copy; safe to hold while producers keep appending."""
        return list(self._accepted)

    def outcomes(self) -> list[SubmissionOutcome]:
        return list(self._outcomes)

    @property
    def total(self) -> int:
        return len(self._outcomes)

    @property
    def accepted(self) -> int:
        return len(self._accepted)

    @property
    def failed(self) -> int:
        return len(self._outcomes) - len(self._accepted)

    def counts(self) -> dict[str, int]:
        return {str(k): v for k, v in self.count_by_outcome.items()}

    def snapshot_stats(self) -> dict:
        return {
            "total": self.total,
            "accepted": self.accepted,
            "failed": self.failed,
            "by_outcome": self.counts(),
            "failure_reasons": dict(self.failures_by_reason.most_common(10)),
            "failure_samples": list(self.failure_samples),
        }
