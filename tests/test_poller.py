import asyncio
import random
from collections import Counter

from ledgerbench.config import PollerConfig
from ledgerbench.constants import Completion
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.poller import ConfirmationPoller


class CountingLedger(InMemoryLedger):
    def __init__(self, **kw):
        super().__init__(**kw)
        self.lookups: Counter[str] = Counter()

    async def get_receipt(self, handle):
        self.lookups[handle] += 1
        return await super().get_receipt(handle)


def handles(n: int, prefix: str = "h") -> list[str]:
    return [f"{prefix}{i:06d}" for i in range(n)]


def cfg(**kw) -> PollerConfig:
    base = dict(interval=0.01, timeout=1.0, sampling_threshold=1000, sample_cap=1000)
    base.update(kw)
    return PollerConfig(**base)


async def test_small_set_checks_every_handle_each_round():
    ledger = CountingLedger()
    hs = handles(50)
    poller = ConfirmationPoller(ledger, cfg(interval=0.01))

    result = await poller.await_inclusion(hs, timeout=0.05)

    assert result.completion == Completion.TIMEOUT
    assert result.rounds >= 2
    assert result.checks_per_round == [50] * result.rounds
    assert set(ledger.lookups.values()) == {result.rounds}
    assert not result.sampled


async def test_all_included_completes_in_one_round():
    ledger = InMemoryLedger()
    hs = handles(50)
    ledger.insert_receipts(hs, height=3)

    result = await ConfirmationPoller(ledger, cfg()).await_inclusion(hs)

    assert result.completion == Completion.ALL
    assert result.rounds == 1
    assert result.included == result.estimated_included == 50
    assert not result.is_estimate
    assert all(r.block_height == 3 for r in result.records.values())


async def test_large_set_is_sampled_and_estimated():
    ledger = CountingLedger()
    hs = handles(100_000)
    ledger.insert_receipts(hs[:60_000], height=1)
    poller = ConfirmationPoller(ledger, cfg(), rng=random.Random(42))

    result = await poller.await_inclusion(hs, timeout=0)

    assert result.sampled
    assert result.rounds == 1
    assert result.checks_per_round == [1000]
    assert sum(ledger.lookups.values()) <= 1000
    assert 55_000 <= result.estimated_included <= 65_000
    assert result.is_estimate
    assert result.to_dict()["estimated"] is True


async def test_sampled_set_stops_at_completion_fraction():
    ledger = InMemoryLedger()
    hs = handles(100_000)
    ledger.insert_receipts(hs[:97_000], height=1)
    poller = ConfirmationPoller(ledger, cfg(completion_fraction=0.95), rng=random.Random(7))

    result = await poller.await_inclusion(hs, timeout=5)

    assert result.completion == Completion.THRESHOLD
    assert result.rounds == 1
    assert result.estimated_included >= 95_000


async def test_timeout_leaves_handles_unresolved():
    ledger = InMemoryLedger()
    hs = handles(10)
    ledger.insert_receipts(hs[:4], height=2)

    result = await ConfirmationPoller(ledger, cfg()).await_inclusion(hs, timeout=0.05)

    assert result.completion == Completion.TIMEOUT
    assert result.included == 4
    assert sorted(result.unresolved) == hs[4:]
    assert result.unresolved_count == 6


async def test_rounds_are_spaced_by_the_poll_interval():
    ledger = InMemoryLedger()
    result = await ConfirmationPoller(ledger, cfg()).await_inclusion(handles(5), timeout=0.22, poll_interval=0.05)

    assert 2 <= result.rounds <= 5
    starts = [t for t, _ in result.progress]
    assert all(b - a >= 0.045 for a, b in zip(starts, starts[1:]))


async def test_empty_set():
    result = await ConfirmationPoller(InMemoryLedger(), cfg()).await_inclusion([])
    assert result.completion == Completion.EMPTY
    assert result.rounds == 0
    assert result.total == 0


async def test_lookup_errors_count_as_unresolved():
    ledger = InMemoryLedger()
    ledger.reachable = False

    result = await ConfirmationPoller(ledger, cfg()).await_inclusion(handles(3), timeout=0.03)

    assert result.completion == Completion.TIMEOUT
    assert result.included == 0
    assert result.receipt_errors >= 3


async def test_growing_set_waits_for_settled():
    ledger = InMemoryLedger()
    live = handles(5, "a")
    ledger.insert_receipts(live, height=1)
    settled = asyncio.Event()
    poller = ConfirmationPoller(ledger, cfg())

    task = asyncio.create_task(poller.await_inclusion(lambda: list(live), timeout=2, settled=settled))
    await asyncio.sleep(0.05)
    # Everything seen so far is included, but load is still running
    assert not task.done()

    more = handles(5, "b")
    live.extend(more)
    ledger.insert_receipts(more, height=2)
    settled.set()
    result = await task

    assert result.completion == Completion.ALL
    assert result.total == 10
    assert result.included == 10


async def test_small_set_rechecks_included_handles():
    ledger = CountingLedger()
    hs = handles(50)
    ledger.insert_receipts(hs[:25], height=2)

    result = await ConfirmationPoller(ledger, cfg(interval=0.01)).await_inclusion(hs, timeout=0.05)

    assert result.completion == Completion.TIMEOUT
    assert result.included == 25
    assert result.checks_per_round == [50] * result.rounds
    assert set(ledger.lookups.values()) == {result.rounds}
