import asyncio

import pytest

from ledgerbench.errors import SetupFailure
from ledgerbench.models import Sender
from ledgerbench.sequence import SequenceAllocator


async def test_concurrent_next_is_gapless_and_unique():
    alloc = SequenceAllocator()
    sender = Sender(address="0xabc")
    alloc.seed_value(sender, 7)

    got = await asyncio.gather(*(alloc.next(sender) for _ in range(10_000)))

    assert sorted(got) == list(range(7, 10_007))
    assert alloc.issued(sender) == (7, 10_007)
    assert sender.sequence == 10_007


async def test_concurrent_next_across_senders_is_independent():
    alloc = SequenceAllocator()
    a, b = Sender(address="0xa"), Sender(address="0xb")
    alloc.seed_value(a, 0)
    alloc.seed_value(b, 100)

    got = await asyncio.gather(*(alloc.next(s) for _ in range(500) for s in (a, b)))

    assert sorted(got[0::2]) == list(range(0, 500))
    assert sorted(got[1::2]) == list(range(100, 600))


async def test_seed_reads_each_sender_once(ledger, senders):
    alloc = SequenceAllocator()
    await alloc.seed(ledger, senders)

    assert ledger.calls["get_sequence_number"] == len(senders)
    for i, s in enumerate(senders):
        assert alloc.issued(s) == (i, i)

    # next() never goes back to the ledger
    for s in senders:
        await alloc.next(s)
    assert ledger.calls["get_sequence_number"] == len(senders)


async def test_seed_failure_is_setup_failure(ledger, senders):
    ledger.reachable = False
    with pytest.raises(SetupFailure):
        await SequenceAllocator().seed(ledger, senders)


async def test_unseeded_sender_is_a_key_error():
    with pytest.raises(KeyError):
        await SequenceAllocator().next(Sender(address="0xnobody"))


def test_seeding_twice_is_refused():
    alloc = SequenceAllocator()
    alloc.seed_value("0xa", 1)
    with pytest.raises(ValueError):
        alloc.seed_value("0xa", 5)


async def test_snapshot_reports_issued_counts():
    alloc = SequenceAllocator()
    alloc.seed_value("0xa", 3)
    for _ in range(4):
        await alloc.next("0xa")
    assert alloc.snapshot() == {"0xa": {"start": 3, "next": 7, "issued": 4}}


async def test_repeated_sender_is_setup_failure(ledger, senders):
    alloc = SequenceAllocator()
    with pytest.raises(SetupFailure, match="duplicate senders"):
        await alloc.seed(ledger, [senders[0], Sender(address=senders[0].address)])
    assert ledger.calls["get_sequence_number"] == 0
    assert alloc.accounts == {}
