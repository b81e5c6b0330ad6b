"""One benchmark run, end to end.

setup -> send -> inclusion -> block analysis -> invariants -> report

Only ``SetupFailure`` escapes ``execute()``. Everything that goes wrong once
load has started ends up in the report.
"""

import asyncio
import contextlib
import logging
import random
import time

import ledgerbench.constants as C
from ledgerbench import metrics
from ledgerbench.config import Settings
from ledgerbench.errors import LedgerError, SetupFailure
from ledgerbench.generator import (
    BacklogEstimator,
    BlockCapacityEstimator,
    LoadGenerator,
    PendingCountEstimator,
    RequestFactory,
)
from ledgerbench.ledger.base import Ledger, PendingPool
from ledgerbench.models import Block, RunWindow, Sender
from ledgerbench.poller import ConfirmationPoller, InclusionResult
from ledgerbench.report import ResultSink, RunReport
from ledgerbench.sequence import SequenceAllocator
from ledgerbench.tracker import SubmissionTracker
from ledgerbench.verifier import InvariantVerifier, parameter_checks
from ledgerbench.ws import HeadTracker

log = logging.getLogger("ledgerbench.harness")


class BenchmarkRun:
    def __init__(
        self,
        ledger: Ledger,
        senders: list[Sender],
        settings: Settings,
        *,
        sink: ResultSink | None = None,
        heads: HeadTracker | None = None,
        rng: random.Random | None = None,
        run_id: str | None = None,
    ) -> None:
        if not senders:
            raise SetupFailure("no senders configured")
        self.ledger = ledger
        self.senders = senders
        self.settings = settings
        self.sink = sink
        self.heads = heads
        if heads is not None and heads.fallback is None:
            heads.fallback = ledger.get_block_height
        self.allocator = SequenceAllocator()
        self.tracker = SubmissionTracker()
        self.poller = ConfirmationPoller(ledger, settings.poller, rng=rng)
        self.verifier = InvariantVerifier.from_config(ledger, settings.invariants)
        self.report = RunReport(strategy=str(settings.run.strategy), backend=str(settings.ledger.backend))
        if run_id:
            self.report.run_id = run_id
        self.phase = "created"
        self.window: RunWindow | None = None
        self.chain_id: int | None = None
        self.generator: LoadGenerator | None = None

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def setup(self) -> dict:
        self.phase = "setup"
        connect = getattr(self.ledger, "connect", None)
        try:
            if connect is not None:
                await connect()
            start_height = await self.ledger.get_block_height()
            if self.settings.capacity.expected_chain_id is not None:
                self.chain_id = await self._read_chain_id()
        except LedgerError as e:
            raise SetupFailure(f"ledger unreachable: {e}") from e
        await self.allocator.seed(self.ledger, self.senders)
        before = await self.verifier.snapshot_before()
        self.window = RunWindow(start_time=time.time(), start_height=start_height)
        log.info("Setup done: %s senders, start height %s", len(self.senders), start_height)
        return before

    async def _read_chain_id(self) -> int | None:
        reader = getattr(self.ledger, "get_chain_id", None)
        if reader is None:
            log.warning("Ledger does not report a chain id")
            return None
        return await reader()

    def _estimator(self) -> BacklogEstimator:
        sat = self.settings.run.saturation
        if sat.estimator == "pending":
            if isinstance(self.ledger, PendingPool):
                return PendingCountEstimator(self.ledger, target=sat.initial_fill)
            log.warning("Ledger exposes no pending pool, using block-capacity estimate")
        return BlockCapacityEstimator(sat.per_block_estimate)

    def _build_generator(self) -> LoadGenerator:
        run = self.settings.run
        factory = RequestFactory(
            self.senders,
            self.allocator,
            value=run.value,
            resource_limit=run.resource_limit,
            price=run.price,
        )
        return LoadGenerator(
            self.ledger,
            factory,
            self.tracker,
            submit_timeout=run.submit_timeout,
            send_timeout=run.send_timeout,
            batch=run.batch,
            saturation=run.saturation,
            estimator=self._estimator(),
            height_source=self.heads.current if self.heads else None,
        )

    async def send_and_include(self) -> InclusionResult:
        run = self.settings.run
        self.generator = self._build_generator()

        if run.strategy != C.Strategy.SATURATION:
            self.phase = "sending"
            await self.generator.collect(run.strategy, run.count, run.duration)
            self.phase = "including"
            return await self.poller.await_inclusion(self.tracker.accepted_handles())

        # Saturation keeps submitting while blocks drain the backlog, so polling overlaps the load
        self.phase = "saturating"
        settled = asyncio.Event()
        bound = run.send_timeout if run.duration is None else min(run.duration, run.send_timeout)
        poll = asyncio.create_task(
            self.poller.await_inclusion(
                self.tracker.accepted_handles,
                timeout=bound + self.settings.poller.timeout,
                settled=settled,
            ),
            name="inclusion_poller",
        )
        try:
            await self.generator.collect(run.strategy, run.count, run.duration)
        except BaseException:
            poll.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poll
            raise
        finally:
            settled.set()
        self.phase = "including"
        return await poll

    async def _fetch_blocks(self, start: int, end: int) -> list[Block]:
        cap = self.settings.capacity.max_blocks_analyzed
        # Keep the block before the window's first produced block for the first delta
        lo = max(start, end - cap)
        results = await asyncio.gather(*(self.ledger.get_block(h) for h in range(lo, end + 1)), return_exceptions=True)
        blocks = []
        for h, r in zip(range(lo, end + 1), results):
            if isinstance(r, LedgerError):
                log.warning("Block %s unavailable: %s", h, r)
            elif isinstance(r, BaseException):
                raise r
            elif r is not None:
                blocks.append(r)
        return blocks

    def _sequence_ranges(self) -> dict:
        used: dict[str, set[int]] = {}
        for o in self.tracker.outcomes():
            used.setdefault(o.request.sender.address, set()).add(o.request.sequence)
        out = {}
        for s in self.senders:
            start, nxt = self.allocator.issued(s)
            seen = used.get(s.address, set())
            out[s.address] = {
                "start": start,
                "end": nxt - 1 if nxt > start else None,
                "issued": nxt - start,
                "contiguous": seen == set(range(start, nxt)),
            }
        return out

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self) -> RunReport:
        report = self.report
        listener = None
        stop = asyncio.Event()
        if self.heads is not None:
            listener = asyncio.create_task(self.heads.listen(stop), name="head_listener")

        try:
            before = await self.setup()
            inclusion = await self.send_and_include()

            self.phase = "analyzing"
            window = self.window
            window.end_time = time.time()
            try:
                window.end_height = await self.ledger.get_block_height()
            except LedgerError as e:
                log.warning("Cannot read end height: %s", e)
            blocks = await self._fetch_blocks(window.start_height, window.end_height) if window.end_height is not None else []

            outcomes = self.tracker.outcomes()
            submitted_at = {o.handle: o.submitted_at for o in outcomes if o.accepted}
            inclusion_latencies = [
                r.observed_at - submitted_at[h]
                for h, r in inclusion.records.items()
                if r.included and r.observed_at is not None and h in submitted_at
            ]
            cap = self.settings.capacity
            m = metrics.compute(
                window=window,
                blocks=blocks,
                sent=self.tracker.total,
                accepted=self.tracker.accepted,
                included=inclusion.estimated_included,
                included_estimated=inclusion.is_estimate,
                send_duration=self.generator.stats.duration,
                inclusion_duration=window.duration,
                resource_cost_per_tx=cap.resource_cost_per_tx,
                resource_limit_per_block=cap.resource_limit_per_block,
                target_throughput=cap.target_throughput,
                target_block_time=cap.target_block_time,
                expected_resource_limit=cap.expected_resource_limit,
                resource_limit_range=cap.resource_limit_range,
                submit_latencies=[o.latency for o in outcomes if o.latency is not None],
                inclusion_latencies=inclusion_latencies,
            )

            after, read_errors = await self.verifier.snapshot_after()
            checks = self.verifier.verify(before, after, read_errors)
            params = parameter_checks(
                m.to_dict(),
                chain_id=self.chain_id,
                expected_chain_id=cap.expected_chain_id,
                min_capacity=cap.min_theoretical_capacity,
            )
            for p in params:
                if not p.passed:
                    log.warning("%s: FAIL (%s)", p.name, p.reason)

            report.window = {
                "start_time": window.start_time,
                "end_time": window.end_time,
                "start_height": window.start_height,
                "end_height": window.end_height,
                "duration": window.duration,
                "blocks_produced": window.blocks_produced,
            }
            report.send = self.generator.stats.to_dict()
            report.submissions = self.tracker.snapshot_stats()
            report.inclusion = inclusion.to_dict()
            report.metrics = m.to_dict()
            report.invariants = [c.to_dict() for c in checks]
            report.parameters = [p.to_dict() for p in params]
            report.sequences = self._sequence_ranges()
            report.finished_at = time.time()
            self.phase = "done"
        except SetupFailure as e:
            self.phase = "failed"
            log.error("Setup failed: %s", e)
            raise
        except Exception:
            self.phase = "failed"
            log.exception("Run %s aborted", report.run_id)
            raise
        finally:
            stop.set()
            if listener is not None:
                listener.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await listener

        log.info(
            "Run %s done: sent=%s included=%s%s throughput=%s",
            report.run_id, m.sent, m.included, " (est)" if m.included_estimated else "",
            f"{m.inclusion_rate:.2f} tx/s" if m.inclusion_rate is not None else C.UNDEFINED,
        )
        if self.sink is not None:
            self.sink.write(report)
        return report
