import math

import pytest

from ledgerbench.config import BatchConfig, SaturationConfig
from ledgerbench.constants import Outcome, Strategy
from ledgerbench.errors import LedgerError
from ledgerbench.generator import (
    BlockCapacityEstimator,
    LoadGenerator,
    PendingCountEstimator,
    RequestFactory,
)
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.sequence import SequenceAllocator
from ledgerbench.tracker import SubmissionTracker


class WatchingLedger(InMemoryLedger):
    """Remembers how many outcomes were already recorded when each submit started."""

    tracker: SubmissionTracker | None = None

    def __init__(self, **kw):
        super().__init__(**kw)
        self.recorded_at_submit: list[int] = []

    async def submit(self, request):
        self.recorded_at_submit.append(self.tracker.total if self.tracker else 0)
        return await super().submit(request)


async def _generator(ledger, senders, **kw) -> LoadGenerator:
    alloc = SequenceAllocator()
    await alloc.seed(ledger, senders)
    factory = RequestFactory(senders, alloc, value=10)
    tracker = SubmissionTracker()
    if isinstance(ledger, WatchingLedger):
        ledger.tracker = tracker
    return LoadGenerator(ledger, factory, tracker, **kw)


async def test_burst_of_zero_makes_no_calls(ledger, senders):
    gen = await _generator(ledger, senders)
    before = sum(ledger.calls.values())

    outcomes = await gen.collect(Strategy.BURST, 0)

    assert outcomes == []
    assert gen.tracker.total == 0
    assert sum(ledger.calls.values()) == before
    assert ledger.calls["submit"] == 0


async def test_burst_allocates_contiguous_sequences(ledger, senders):
    gen = await _generator(ledger, senders)
    outcomes = await gen.collect(Strategy.BURST, 50)

    assert len(outcomes) == 50
    assert all(o.accepted for o in outcomes)
    for i, s in enumerate(senders):
        seqs = sorted(o.request.sequence for o in outcomes if o.request.sender == s)
        assert seqs == list(range(i, i + 5))


async def test_requests_pay_the_next_sender(ledger, senders):
    gen = await _generator(ledger, senders)
    outcomes = await gen.collect(Strategy.BURST, len(senders))
    addresses = [s.address for s in senders]
    for o in outcomes:
        i = addresses.index(o.request.sender.address)
        assert o.request.recipient == addresses[(i + 1) % len(addresses)]


async def test_steady_issues_groups_in_order():
    ledger = WatchingLedger(submit_delay=0.005)
    senders = ledger.create_senders(4)
    gen = await _generator(ledger, senders, batch=BatchConfig(size=5, pause=0.0))

    outcomes = await gen.collect(Strategy.STEADY, 23)

    assert len(outcomes) == 23
    assert gen.stats.groups == math.ceil(23 / 5)
    # Every submit of group k starts after all outcomes of groups < k are recorded
    for j, recorded in enumerate(ledger.recorded_at_submit):
        assert recorded >= 5 * (j // 5)


async def test_steady_stops_issuing_at_the_deadline(ledger, senders):
    gen = await _generator(ledger, senders, batch=BatchConfig(size=5, pause=0.05))

    outcomes = await gen.collect(Strategy.STEADY, 10_000, duration=0.12)

    assert 0 < len(outcomes) < 10_000
    assert len(outcomes) % 5 == 0
    assert gen.stats.deadline_hit


async def test_rejections_do_not_abort_the_run():
    ledger = InMemoryLedger(reject_if=lambda r: "insufficient funds" if r.sequence % 3 == 0 else None)
    senders = ledger.create_senders(2, start_sequence=0)
    gen = await _generator(ledger, senders)

    outcomes = await gen.collect(Strategy.BURST, 30)

    assert len(outcomes) == 30
    assert gen.tracker.failed > 0
    assert gen.tracker.accepted + gen.tracker.failed == 30
    assert "insufficient funds" in gen.tracker.failure_samples
    assert all(o.reason == "insufficient funds" for o in outcomes if not o.accepted)


async def test_submit_timeout_becomes_an_outcome():
    ledger = InMemoryLedger(submit_delay=0.5)
    senders = ledger.create_senders(2)
    gen = await _generator(ledger, senders, submit_timeout=0.05)

    outcomes = await gen.collect(Strategy.BURST, 4)

    assert len(outcomes) == 4
    assert {o.outcome for o in outcomes} == {Outcome.TIMEOUT}
    assert gen.tracker.counts() == {"TIMEOUT": 4}


async def test_unreachable_ledger_becomes_network_failures(ledger, senders):
    gen = await _generator(ledger, senders)
    ledger.reachable = False

    outcomes = await gen.collect(Strategy.BURST, 10)

    assert [o.outcome for o in outcomes] == [Outcome.FAILED_NET] * 10


async def test_run_yields_outcomes_as_they_complete(ledger, senders):
    gen = await _generator(ledger, senders)
    seen = 0
    async for outcome in gen.run(Strategy.STEADY, 12):
        assert outcome.accepted
        seen += 1
    assert seen == 12


async def test_saturation_fills_then_refills_by_block_progress(ledger, senders):
    height = 0

    async def next_height():
        nonlocal height
        height += 1
        return height

    sat = SaturationConfig(initial_fill=20, fill_chunk=5, refill_interval=0.01, refill_cap=7, per_block_estimate=3)
    gen = await _generator(ledger, senders, saturation=sat, height_source=next_height)

    outcomes = await gen.collect(Strategy.SATURATION, 40)

    assert len(outcomes) == 40
    assert gen.stats.initial_fill == 20
    assert [r["sent"] for r in gen.stats.refills] == [3] * 6 + [2]


async def test_saturation_refill_is_capped(ledger, senders):
    height = 0

    async def jump():
        nonlocal height
        height += 10
        return height

    sat = SaturationConfig(initial_fill=0, fill_chunk=5, refill_interval=0.01, refill_cap=4, per_block_estimate=100)
    gen = await _generator(ledger, senders, saturation=sat, height_source=jump)

    await gen.collect(Strategy.SATURATION, 12)

    assert [r["sent"] for r in gen.stats.refills] == [4, 4, 4]


async def test_saturation_survives_height_errors(ledger, senders):
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        if calls % 2 == 0:
            raise LedgerError("boom")
        return calls

    sat = SaturationConfig(initial_fill=5, fill_chunk=5, refill_interval=0.01, refill_cap=5, per_block_estimate=5)
    gen = await _generator(ledger, senders, saturation=sat, height_source=flaky)

    outcomes = await gen.collect(Strategy.SATURATION, 15)

    assert len(outcomes) == 15


async def test_saturation_without_a_count_runs_until_the_deadline(ledger, senders):
    height = 0

    async def next_height():
        nonlocal height
        height += 1
        return height

    sat = SaturationConfig(initial_fill=8, fill_chunk=4, refill_interval=0.01, refill_cap=2, per_block_estimate=2)
    gen = await _generator(ledger, senders, saturation=sat, height_source=next_height)

    outcomes = await gen.collect(Strategy.SATURATION, None, duration=0.2)

    assert gen.stats.initial_fill == 8
    assert len(gen.stats.refills) >= 3
    assert len(outcomes) == 8 + 2 * len(gen.stats.refills)
    assert gen.stats.deadline_hit
    assert gen.stats.requested is None


async def test_block_capacity_estimator():
    est = BlockCapacityEstimator(per_block=100)
    assert await est.consumed(5, 8) == 300
    assert await est.consumed(8, 5) == 0


async def test_pending_count_estimator():
    class Pool:
        async def pending_count(self):
            return 10

    est = PendingCountEstimator(Pool(), target=25)
    assert await est.consumed(0, 1) == 15
    assert await PendingCountEstimator(Pool(), target=5).consumed(0, 1) == 0


def test_factory_needs_senders():
    with pytest.raises(ValueError):
        RequestFactory([], SequenceAllocator(), value=1)
