"""Simulated ledger kept entirely in memory.

Used for dry runs (``backend = "memory"``) and by the test-suite. It behaves
like a small account-based chain: per-account sequence numbers, a pending
pool, blocks with a resource limit, and a fee split paid to fixed recipient
accounts when a block includes a transaction.
"""

import asyncio
import contextlib
import hashlib
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable

import ledgerbench.constants as C
from ledgerbench.errors import LedgerError, SubmissionRejected
from ledgerbench.models import Block, Receipt, Sender, SubmissionRequest

log = logging.getLogger("ledgerbench.ledger.memory")


@dataclass
class AccountState:
    sequence: int = 0
    balance: int = 0


def _handle_for(req: SubmissionRequest) -> str:
    raw = f"{req.sender.address}:{req.sequence}:{req.recipient}:{req.value}:{req.resource_limit}"
    return "0x" + hashlib.sha256(raw.encode()).hexdigest()


class InMemoryLedger:
    def __init__(
        self,
        *,
        resource_limit: int = 150_000_000,
        tx_cost: int = C.TRANSFER_COST,
        block_time: float = 1.0,
        genesis_time: float | None = None,
        fee_split: dict[str, float] | None = None,
        default_price: int = 1,
        submit_delay: float = 0.0,
        chain_id: int = 1337,
        reject_if: Callable[[SubmissionRequest], str | None] | None = None,
    ) -> None:
        self.resource_limit = resource_limit
        self.tx_cost = tx_cost
        self.block_time = block_time
        self.genesis_time = genesis_time if genesis_time is not None else time.time()
        self.fee_split = fee_split or {}
        self.default_price = default_price
        self.submit_delay = submit_delay
        self.reject_if = reject_if
        self.chain_id = chain_id
        self.reachable = True

        self.accounts: dict[str, AccountState] = {}
        self.pool: dict[str, SubmissionRequest] = {}
        self._pending_slots: set[tuple[str, int]] = set()
        self.blocks: list[Block] = [Block(height=0, timestamp=self.genesis_time, resource_limit=resource_limit)]
        self.receipts: dict[str, int] = {}
        self.calls: Counter[str] = Counter()
        self._miner: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Test and dry-run helpers
    # ------------------------------------------------------------------

    def fund(self, address: str, amount: int, *, sequence: int | None = None) -> AccountState:
        acct = self.accounts.setdefault(address, AccountState())
        acct.balance += amount
        if sequence is not None:
            acct.sequence = sequence
        return acct

    def create_senders(self, n: int, *, balance: int = 10**24, start_sequence: int = 0) -> list[Sender]:
        senders = []
        for i in range(n):
            address = "0x" + hashlib.sha256(f"sender-{i}".encode()).hexdigest()[:40]
            self.fund(address, balance, sequence=start_sequence + i)
            senders.append(Sender(address=address))
        return senders

    def insert_receipts(self, handles: list[str], height: int) -> None:
        """Mark handles as included without going through the pool."""
        for h in handles:
            self.receipts[h] = height

    @property
    def capacity_per_block(self) -> int:
        return self.resource_limit // self.tx_cost

    def produce_block(self) -> Block:
        """Seal the next block from the pending pool, respecting sequence order and the resource limit."""
        height = self.blocks[-1].height + 1
        included: list[str] = []
        used = 0
        progress = True
        while progress and len(included) < self.capacity_per_block:
            progress = False
            for handle, req in list(self.pool.items()):
                if len(included) >= self.capacity_per_block:
                    break
                acct = self.accounts.setdefault(req.sender.address, AccountState())
                if req.sequence != acct.sequence:
                    continue
                self._apply(req)
                del self.pool[handle]
                self._pending_slots.discard((req.sender.address, req.sequence))
                self.receipts[handle] = height
                included.append(handle)
                used += self.tx_cost
                progress = True

        block = Block(
            height=height,
            timestamp=self.genesis_time + height * self.block_time,
            transactions=tuple(included),
            resource_used=used,
            resource_limit=self.resource_limit,
        )
        self.blocks.append(block)
        log.debug("Sealed block %s with %s txns (%s pending)", height, len(included), len(self.pool))
        return block

    def _apply(self, req: SubmissionRequest) -> None:
        price = req.price or self.default_price
        fee = self.tx_cost * price
        sender = self.accounts.setdefault(req.sender.address, AccountState())
        sender.sequence += 1
        sender.balance -= req.value + fee
        self.accounts.setdefault(req.recipient, AccountState()).balance += req.value
        total = sum(self.fee_split.values())
        for account, share in self.fee_split.items():
            self.accounts.setdefault(account, AccountState()).balance += int(fee * share / total)

    async def _mine(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.produce_block()

    def start_mining(self, interval: float | None = None) -> None:
        if self._miner is None:
            self._miner = asyncio.create_task(self._mine(interval or self.block_time), name="memory_miner")

    async def stop_mining(self) -> None:
        if self._miner is not None:
            self._miner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._miner
            self._miner = None

    def _check(self, name: str) -> None:
        self.calls[name] += 1
        if not self.reachable:
            raise LedgerError(f"{name}: ledger unreachable")

    # ------------------------------------------------------------------
    # Ledger API
    # ------------------------------------------------------------------

    async def submit(self, request: SubmissionRequest) -> str:
        self._check("submit")
        if self.submit_delay:
            await asyncio.sleep(self.submit_delay)
        if self.reject_if is not None:
            reason = self.reject_if(request)
            if reason:
                raise SubmissionRejected(reason)
        acct = self.accounts.setdefault(request.sender.address, AccountState())
        if request.sequence < acct.sequence:
            raise SubmissionRejected("nonce too low", code="nonce_too_low")
        slot = (request.sender.address, request.sequence)
        if slot in self._pending_slots:
            raise SubmissionRejected("replacement transaction underpriced", code="duplicate")
        handle = _handle_for(request)
        self._pending_slots.add(slot)
        self.pool[handle] = request
        return handle

    async def get_chain_id(self) -> int:
        self._check("get_chain_id")
        return self.chain_id

    async def get_sequence_number(self, account: str) -> int:
        self._check("get_sequence_number")
        return self.accounts.get(account, AccountState()).sequence

    async def get_balance(self, account: str) -> int:
        self._check("get_balance")
        return self.accounts.get(account, AccountState()).balance

    async def get_block_height(self) -> int:
        self._check("get_block_height")
        return self.blocks[-1].height

    async def get_block(self, height: int) -> Block | None:
        self._check("get_block")
        if 0 <= height < len(self.blocks):
            return self.blocks[height]
        return None

    async def get_receipt(self, handle: str) -> Receipt | None:
        self._check("get_receipt")
        height = self.receipts.get(handle)
        if height is None:
            return None
        return Receipt(handle=handle, included=True, block_height=height)

    async def pending_count(self) -> int:
        self._check("pending_count")
        return len(self.pool)

    async def aclose(self) -> None:
        await self.stop_mining()
