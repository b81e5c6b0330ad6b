import asyncio
import logging
from collections import Counter
from dataclasses import dataclass

from ledgerbench.errors import LedgerError, SetupFailure
from ledgerbench.ledger.base import Ledger
from ledgerbench.models import Sender

log = logging.getLogger("ledgerbench.sequence")


@dataclass
class AccountRecord:
    lock: asyncio.Lock
    start_seq: int
    next_seq: int


class SequenceAllocator:
    """Hands out per-sender sequence numbers.

    Every sender is seeded exactly once, before any submission, from the
    ledger's view of its next sequence number. After that ``next()`` never
    touches the network: it increments the sender's counter under that
    sender's lock, so concurrent callers always see distinct values.
    """

    def __init__(self) -> None:
        self.accounts: dict[str, AccountRecord] = {}

    def seed_value(self, sender: Sender | str, start: int) -> None:
        addr = sender.address if isinstance(sender, Sender) else sender
        if addr in self.accounts:
            raise ValueError(f"sender {addr} already seeded")
        self.accounts[addr] = AccountRecord(lock=asyncio.Lock(), start_seq=start, next_seq=start)
        if isinstance(sender, Sender):
            sender.sequence = start

    async def seed(self, ledger: Ledger, senders: list[Sender]) -> None:
        """One authoritative read per sender. Any failure aborts the run."""
        counts = Counter(s.address for s in senders)
        dupes = sorted(a for a, n in counts.items() if n > 1 or a in self.accounts)
        if dupes:
            raise SetupFailure(f"duplicate senders: {', '.join(dupes)}")

        async def _read(s: Sender) -> int:
            try:
                return await ledger.get_sequence_number(s.address)
            except LedgerError as e:
                raise SetupFailure(f"cannot read sequence number for {s.address}: {e}") from e

        starts = await asyncio.gather(*(_read(s) for s in senders))
        for s, start in zip(senders, starts):
            self.seed_value(s, start)
            log.debug("Seeded %s at sequence %s", s.address, start)

    async def next(self, sender: Sender | str) -> int:
        addr = sender.address if isinstance(sender, Sender) else sender
        rec = self.accounts[addr]

        async with rec.lock:
            s = rec.next_seq
            rec.next_seq += 1
            if isinstance(sender, Sender):
                sender.sequence = rec.next_seq
        return s

    def issued(self, sender: Sender | str) -> tuple[int, int]:
        """``(start, next)``: the half-open range handed out so far."""
        addr = sender.address if isinstance(sender, Sender) else sender
        rec = self.accounts[addr]
        return rec.start_seq, rec.next_seq

    def snapshot(self) -> dict[str, dict[str, int]]:
        return {
            addr: {"start": rec.start_seq, "next": rec.next_seq, "issued": rec.next_seq - rec.start_seq}
            for addr, rec in self.accounts.items()
        }
