"""Inclusion polling.

Small handle sets are checked exhaustively: every handle, every round,
included or not. Above ``sampling_threshold`` each round checks a random
sample of the handles not yet known to be included and extrapolates; the
resulting count is an estimate and is reported as such.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import ledgerbench.constants as C
from ledgerbench.config import PollerConfig
from ledgerbench.errors import LedgerError
from ledgerbench.ledger.base import Ledger
from ledgerbench.models import InclusionRecord

log = logging.getLogger("ledgerbench.poller")

HandleSource = Iterable[str] | Callable[[], Iterable[str]]


@dataclass
class InclusionResult:
    records: dict[str, InclusionRecord]
    total: int
    included: int
    estimated_included: int
    sampled: bool
    completion: C.Completion
    rounds: int = 0
    checks_per_round: list[int] = field(default_factory=list)
    progress: list[tuple[float, int]] = field(default_factory=list)
    receipt_errors: int = 0
    started_at: float = 0.0
    finished_at: float = 0.0

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    @property
    def unresolved(self) -> list[str]:
        return [h for h, r in self.records.items() if not r.included]

    @property
    def unresolved_count(self) -> int:
        return self.total - self.estimated_included

    @property
    def is_estimate(self) -> bool:
        return self.sampled and self.estimated_included != self.included

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "included": self.estimated_included,
            "included_observed": self.included,
            "unresolved": self.unresolved_count,
            "estimated": self.is_estimate,
            "sampled": self.sampled,
            "completion": str(self.completion),
            "rounds": self.rounds,
            "max_checks_per_round": max(self.checks_per_round, default=0),
            "receipt_errors": self.receipt_errors,
            "duration": self.duration,
        }


class ConfirmationPoller:
    def __init__(self, ledger: Ledger, cfg: PollerConfig | None = None, *, rng: random.Random | None = None) -> None:
        self.ledger = ledger
        self.cfg = cfg or PollerConfig()
        self.rng = rng or random.Random()
        self.records: dict[str, InclusionRecord] = {}
        self._sem = asyncio.Semaphore(max(1, self.cfg.max_concurrency))
        self._errors = 0

    def _snapshot(self, handles: HandleSource) -> list[str]:
        source = handles() if callable(handles) else handles
        snap = list(dict.fromkeys(source))
        for h in snap:
            if h not in self.records:
                self.records[h] = InclusionRecord(handle=h)
        return snap

    async def _check(self, handle: str) -> bool | None:
        """True if included, False if not (yet), None if the lookup failed."""
        async with self._sem:
            try:
                receipt = await self.ledger.get_receipt(handle)
            except LedgerError as e:
                log.debug("receipt lookup failed for %s: %s", handle, e)
                return None
        if receipt is None or not receipt.included:
            return False
        self.records[handle].mark_included(receipt.block_height)
        return True

    async def _round(self, snap: list[str]) -> tuple[int, int, int, bool]:
        """One polling round. Returns (checks, observed included, estimated included, sampled)."""
        pending = [h for h in snap if not self.records[h].included]
        known = len(snap) - len(pending)
        sampled = len(snap) > self.cfg.sampling_threshold

        if not sampled:
            results = await asyncio.gather(*(self._check(h) for h in snap))
            self._errors += sum(1 for r in results if r is None)
            included = sum(1 for h in snap if self.records[h].included)
            return len(snap), included, included, False

        k = min(self.cfg.sample_cap, len(pending))
        sample = self.rng.sample(pending, k) if k else []
        results = await asyncio.gather(*(self._check(h) for h in sample))
        self._errors += sum(1 for r in results if r is None)
        hits = sum(1 for r in results if r)
        included = sum(1 for h in snap if self.records[h].included)
        if k == 0:
            return 0, included, included, True
        # Known inclusions are exact; extrapolate only over the handles still in doubt
        estimate = known + round(hits / k * len(pending))
        return k, included, max(included, estimate), True

    async def await_inclusion(
        self,
        handles: HandleSource,
        timeout: float | None = None,
        poll_interval: float | None = None,
        *,
        settled: asyncio.Event | None = None,
    ) -> InclusionResult:
        """Poll until every handle is included, the completion fraction is met, or the timeout passes.

        ``handles`` may be a callable; it is re-read every round so the set can
        grow while load is still being generated. If ``settled`` is given the
        completion conditions only apply once it is set.
        """
        timeout = self.cfg.timeout if timeout is None else timeout
        interval = self.cfg.interval if poll_interval is None else poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        started = time.time()
        self._errors = 0

        rounds = 0
        checks: list[int] = []
        progress: list[tuple[float, int]] = []
        snap: list[str] = []
        included = estimate = 0
        sampled = False
        completion = C.Completion.TIMEOUT

        while True:
            round_start = loop.time()
            load_done = settled is None or settled.is_set()
            snap = self._snapshot(handles)
            if not snap and load_done:
                completion = C.Completion.EMPTY
                break

            n_checks, included, estimate, sampled = await self._round(snap)
            rounds += 1
            checks.append(n_checks)
            progress.append((time.time() - started, estimate))
            log.debug("round %s: %s/%s included (%s checks)", rounds, estimate, len(snap), n_checks)

            if load_done and snap:
                if included >= len(snap):
                    completion = C.Completion.ALL
                    break
                if sampled and estimate >= len(snap) * self.cfg.completion_fraction:
                    completion = C.Completion.THRESHOLD
                    break

            now = loop.time()
            if now >= deadline:
                break
            # Rounds start at least ``interval`` apart
            await asyncio.sleep(min(max(0.0, round_start + interval - now), deadline - now))
            if loop.time() >= deadline:
                break

        result = InclusionResult(
            records={h: self.records[h] for h in snap},
            total=len(snap),
            included=included,
            estimated_included=estimate if sampled else included,
            sampled=sampled,
            completion=completion,
            rounds=rounds,
            checks_per_round=checks,
            progress=progress,
            receipt_errors=self._errors,
            started_at=started,
            finished_at=time.time(),
        )
        log.info(
            "Inclusion phase: %s/%s included%s after %s rounds (%s)",
            result.estimated_included, result.total, " (estimated)" if result.is_estimate else "",
            rounds, completion,
        )
        return result
