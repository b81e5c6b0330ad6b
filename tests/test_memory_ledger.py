import pytest
from conftest import GENESIS

from ledgerbench.errors import LedgerError, SubmissionRejected
from ledgerbench.ledger.base import PendingPool
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.models import SubmissionRequest


def req(sender, seq, recipient="0xdead", value=5):
    return SubmissionRequest(sender=sender, recipient=recipient, value=value, resource_limit=21_000, sequence=seq)


async def test_blocks_include_in_sequence_order(ledger):
    [s] = ledger.create_senders(1)
    late = await ledger.submit(req(s, 1))
    early = await ledger.submit(req(s, 0))

    block = ledger.produce_block()

    assert block.transactions == (early, late)
    assert block.timestamp == GENESIS + 0.05
    assert (await ledger.get_receipt(late)).block_height == 1
    assert await ledger.get_sequence_number(s.address) == 2
    assert await ledger.get_balance("0xdead") == 10


async def test_gap_waits_in_the_pool(ledger):
    [s] = ledger.create_senders(1)
    h = await ledger.submit(req(s, 3))
    ledger.produce_block()
    assert await ledger.get_receipt(h) is None
    assert await ledger.pending_count() == 1


async def test_block_respects_resource_limit():
    ledger = InMemoryLedger(resource_limit=21_000 * 3)
    [s] = ledger.create_senders(1)
    for i in range(5):
        await ledger.submit(req(s, i))
    assert ledger.produce_block().tx_count == 3
    assert ledger.produce_block().tx_count == 2


async def test_stale_and_duplicate_sequences_are_rejected(ledger):
    [s] = ledger.create_senders(1, start_sequence=4)
    with pytest.raises(SubmissionRejected, match="nonce too low"):
        await ledger.submit(req(s, 3))
    await ledger.submit(req(s, 4))
    with pytest.raises(SubmissionRejected) as exc:
        await ledger.submit(req(s, 4, value=6))
    assert exc.value.code == "duplicate"


async def test_fees_are_split():
    ledger = InMemoryLedger(fee_split={"A": 2, "B": 1})
    [s] = ledger.create_senders(1)
    await ledger.submit(req(s, 0))
    ledger.produce_block()
    assert await ledger.get_balance("A") == 14_000
    assert await ledger.get_balance("B") == 7_000


async def test_unreachable(ledger):
    ledger.reachable = False
    with pytest.raises(LedgerError):
        await ledger.get_block_height()


def test_exposes_pending_pool(ledger):
    assert isinstance(ledger, PendingPool)
