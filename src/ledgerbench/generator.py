"""Load generation strategies.

All three strategies share one dispatch path: build a request with a freshly
allocated sequence number, submit it with a per-call timeout, turn whatever
happens into exactly one ``SubmissionOutcome``, record it, emit it. Nothing
that happens to an individual submission stops the run, and nothing is
retried.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Protocol

import ledgerbench.constants as C
from ledgerbench.config import BatchConfig, SaturationConfig
from ledgerbench.errors import LedgerError, SubmissionRejected
from ledgerbench.ledger.base import Ledger, PendingPool
from ledgerbench.models import Sender, SubmissionOutcome, SubmissionRequest
from ledgerbench.sequence import SequenceAllocator
from ledgerbench.tracker import SubmissionTracker

log = logging.getLogger("ledgerbench.generator")

_DONE = object()


class RequestFactory:
    """Round-robin over senders; each request pays the next sender in the rotation."""

    def __init__(
        self,
        senders: list[Sender],
        allocator: SequenceAllocator,
        *,
        value: int,
        resource_limit: int = C.TRANSFER_COST,
        price: int | None = None,
        recipient: str | None = None,
    ) -> None:
        if not senders:
            raise ValueError("at least one sender is required")
        self.senders = senders
        self.allocator = allocator
        self.value = value
        self.resource_limit = resource_limit
        self.price = price
        self.recipient = recipient
        self._i = 0

    async def build(self) -> SubmissionRequest:
        i = self._i
        self._i += 1
        sender = self.senders[i % len(self.senders)]
        recipient = self.recipient or self.senders[(i + 1) % len(self.senders)].address
        seq = await self.allocator.next(sender)
        return SubmissionRequest(
            sender=sender,
            recipient=recipient,
            value=self.value,
            resource_limit=self.resource_limit,
            sequence=seq,
            price=self.price,
        )


class BacklogEstimator(Protocol):
    """How many requests the ledger drained between two observed heights."""

    async def consumed(self, previous_height: int, height: int) -> int: ...


class BlockCapacityEstimator:
    """Blocks passed times an assumed per-block count.

    An approximation: it over-fills when blocks are not full and under-fills
    when they carry more than ``per_block``.
    """

    def __init__(self, per_block: int = C.PER_BLOCK_ESTIMATE) -> None:
        self.per_block = per_block

    async def consumed(self, previous_height: int, height: int) -> int:
        return max(0, height - previous_height) * self.per_block


class PendingCountEstimator:
    """Exact deficit against a target backlog, for ledgers that expose their pending pool."""

    def __init__(self, pool: PendingPool, target: int) -> None:
        self.pool = pool
        self.target = target

    async def consumed(self, previous_height: int, height: int) -> int:
        return max(0, self.target - await self.pool.pending_count())


@dataclass
class SendStats:
    strategy: str = ""
    started_at: float | None = None
    finished_at: float | None = None
    requested: int | None = 0
    dispatched: int = 0
    groups: int = 0
    initial_fill: int = 0
    refills: list[dict] = field(default_factory=list)
    deadline_hit: bool = False

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "requested": self.requested,
            "dispatched": self.dispatched,
            "groups": self.groups,
            "initial_fill": self.initial_fill,
            "refills": len(self.refills),
            "refilled": sum(r["sent"] for r in self.refills),
            "deadline_hit": self.deadline_hit,
            "duration": self.duration,
        }


class LoadGenerator:
    def __init__(
        self,
        ledger: Ledger,
        factory: RequestFactory,
        tracker: SubmissionTracker,
        *,
        submit_timeout: float = C.SUBMIT_TIMEOUT,
        send_timeout: float = C.SEND_TIMEOUT,
        batch: BatchConfig | None = None,
        saturation: SaturationConfig | None = None,
        estimator: BacklogEstimator | None = None,
        height_source: Callable[[], Awaitable[int]] | None = None,
    ) -> None:
        self.ledger = ledger
        self.factory = factory
        self.tracker = tracker
        self.submit_timeout = submit_timeout
        self.send_timeout = send_timeout
        self.batch = batch or BatchConfig()
        self.saturation = saturation or SaturationConfig()
        self.estimator = estimator or BlockCapacityEstimator(self.saturation.per_block_estimate)
        self.height_source = height_source or ledger.get_block_height
        self.stats = SendStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self, strategy: C.Strategy | str, target_count: int | None, duration: float | None = None
    ) -> AsyncIterator[SubmissionOutcome]:
        """Drive one strategy and yield outcomes as submissions complete."""
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self._drive(C.Strategy(strategy), target_count, duration, queue.put_nowait),
            name=f"load_{strategy}",
        )
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))
        try:
            while (item := await queue.get()) is not _DONE:
                yield item
            task.result()
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def collect(
        self, strategy: C.Strategy | str, target_count: int | None, duration: float | None = None
    ) -> list[SubmissionOutcome]:
        return [o async for o in self.run(strategy, target_count, duration)]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, req: SubmissionRequest, emit: Callable[[SubmissionOutcome], None]) -> None:
        t0 = time.time()
        kw = {"submitted_at": t0}
        try:
            handle = await asyncio.wait_for(self.ledger.submit(req), timeout=self.submit_timeout)
            outcome = SubmissionOutcome.success(req, handle, latency=time.time() - t0, **kw)
        except SubmissionRejected as e:
            log.debug("rejected %s seq=%s: %s", req.sender.address, req.sequence, e.reason)
            outcome = SubmissionOutcome.failure(req, e.reason, latency=time.time() - t0, **kw)
        except asyncio.TimeoutError:
            outcome = SubmissionOutcome.failure(
                req, f"submit timed out after {self.submit_timeout}s", C.Outcome.TIMEOUT, **kw
            )
        except LedgerError as e:
            outcome = SubmissionOutcome.failure(req, str(e), C.Outcome.FAILED_NET, **kw)
        except Exception as e:
            # Malformed request, signing failure: still one outcome for this request
            log.error("submit error %s seq=%s: %s", req.sender.address, req.sequence, e)
            outcome = SubmissionOutcome.failure(req, f"{e.__class__.__name__}: {e}", C.Outcome.FAILED_NET, **kw)
        self.stats.dispatched += 1
        await self.tracker.record(outcome)
        emit(outcome)

    async def _dispatch_group(self, n: int, emit) -> None:
        group = [await self.factory.build() for _ in range(n)]
        async with asyncio.TaskGroup() as tg:
            for req in group:
                tg.create_task(self._dispatch(req, emit))

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _drive(self, strategy: C.Strategy, target_count: int | None, duration: float | None, emit) -> None:
        if target_count is None and strategy != C.Strategy.SATURATION:
            target_count = C.TARGET_COUNT
        loop = asyncio.get_running_loop()
        bound = self.send_timeout if duration is None else min(duration, self.send_timeout)
        deadline = loop.time() + bound
        self.stats = SendStats(strategy=strategy, requested=target_count, started_at=time.time())
        log.info("Send phase: %s, %s requests, bound %.1fs", strategy, "unbounded" if target_count is None else target_count, bound)
        try:
            match strategy:
                case C.Strategy.BURST:
                    await self._burst(target_count, emit)
                case C.Strategy.STEADY:
                    await self._steady(target_count, deadline, emit)
                case C.Strategy.SATURATION:
                    await self._saturate(target_count, deadline, emit)
        finally:
            self.stats.finished_at = time.time()
            log.info(
                "Send phase done: %s dispatched, %s accepted, %s failed in %.2fs",
                self.stats.dispatched, self.tracker.accepted, self.tracker.failed, self.stats.duration,
            )

    async def _burst(self, count: int, emit) -> None:
        if count <= 0:
            return
        # Every sequence number is allocated before the first submission goes out
        requests = [await self.factory.build() for _ in range(count)]
        log.info("Burst: firing %s requests", len(requests))
        async with asyncio.TaskGroup() as tg:
            for req in requests:
                tg.create_task(self._dispatch(req, emit))

    async def _steady(self, count: int, deadline: float, emit) -> None:
        loop = asyncio.get_running_loop()
        size = max(1, self.batch.size)
        sent = 0
        while sent < count:
            if loop.time() >= deadline:
                self.stats.deadline_hit = True
                log.info("Send deadline reached after %s groups", self.stats.groups)
                break
            n = min(size, count - sent)
            await self._dispatch_group(n, emit)
            sent += n
            self.stats.groups += 1
            if self.batch.pause and sent < count:
                await asyncio.sleep(self.batch.pause)

    async def _saturate(self, count: int | None, deadline: float, emit) -> None:
        """Fill the backlog, then top it up as blocks drain it. ``count=None`` runs until the deadline."""
        loop = asyncio.get_running_loop()
        sat = self.saturation
        sent = 0

        fill = sat.initial_fill if count is None else min(sat.initial_fill, count)
        while sent < fill and loop.time() < deadline:
            n = min(max(1, sat.fill_chunk), fill - sent)
            await self._dispatch_group(n, emit)
            sent += n
        self.stats.initial_fill = sent
        log.info("Backlog saturated with %s requests", sent)

        try:
            last_height = await self.height_source()
        except LedgerError as e:
            log.warning("Cannot read height, skipping refill phase: %s", e)
            return

        async with asyncio.TaskGroup() as tg:
            while count is None or sent < count:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(sat.refill_interval, remaining))
                if loop.time() >= deadline:
                    break
                try:
                    height = await self.height_source()
                except LedgerError as e:
                    log.warning("Height read failed during refill: %s", e)
                    continue
                if height <= last_height:
                    continue
                try:
                    consumed = await self.estimator.consumed(last_height, height)
                except LedgerError as e:
                    log.warning("Backlog estimate failed: %s", e)
                    continue
                to_send = min(consumed, sat.refill_cap)
                if count is not None:
                    to_send = min(to_send, count - sent)
                for _ in range(to_send):
                    req = await self.factory.build()
                    tg.create_task(self._dispatch(req, emit))
                sent += to_send
                self.stats.refills.append({"height": height, "blocks": height - last_height, "sent": to_send})
                log.debug("Refill @ %s: +%s blocks, sent %s (total %s)", height, height - last_height, to_send, sent)
                last_height = height
        self.stats.deadline_hit = loop.time() >= deadline
