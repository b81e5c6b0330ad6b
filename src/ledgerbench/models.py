"""Records exchanged between the generator, tracker, poller and metrics."""

import time
from dataclasses import dataclass, field
from typing import Any

import ledgerbench.constants as C


@dataclass(slots=True, eq=False)
class Sender:
    """An identity that can authorize transactions.

    ``credential`` is whatever the ledger adapter needs to sign (a private key,
    an xrpl ``Wallet``). It never leaves the harness process.
    """

    address: str
    credential: Any = field(default=None, repr=False)
    sequence: int | None = None

    def __hash__(self) -> int:
        return hash(self.address)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Sender) and other.address == self.address


@dataclass(frozen=True, slots=True)
class SubmissionRequest:
    sender: Sender
    recipient: str
    value: int
    resource_limit: int
    sequence: int
    price: int | None = None


@dataclass(frozen=True, slots=True)
class SubmissionOutcome:
    request: SubmissionRequest
    accepted: bool
    handle: str | None = None
    reason: str | None = None
    outcome: C.Outcome = C.Outcome.ACCEPTED
    submitted_at: float = field(default_factory=time.time)
    latency: float | None = None  # submit round-trip, seconds

    def __post_init__(self):
        if self.accepted and not self.handle:
            raise ValueError("accepted outcome requires a handle")
        if not self.accepted and self.reason is None:
            raise ValueError("rejected outcome requires a reason")

    @classmethod
    def success(cls, request: SubmissionRequest, handle: str, **kw) -> "SubmissionOutcome":
        return cls(request=request, accepted=True, handle=handle, **kw)

    @classmethod
    def failure(
        cls, request: SubmissionRequest, reason: str, outcome: C.Outcome = C.Outcome.REJECTED, **kw
    ) -> "SubmissionOutcome":
        return cls(request=request, accepted=False, reason=reason, outcome=outcome, **kw)


@dataclass(slots=True)
class InclusionRecord:
    handle: str
    included: bool = False
    block_height: int | None = None
    observed_at: float | None = None

    def mark_included(self, block_height: int, observed_at: float | None = None) -> None:
        if self.included:
            return
        self.included = True
        self.block_height = block_height
        self.observed_at = observed_at if observed_at is not None else time.time()


@dataclass(slots=True)
class RunWindow:
    start_time: float
    start_height: int
    end_time: float | None = None
    end_height: int | None = None

    @property
    def duration(self) -> float | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def blocks_produced(self) -> int | None:
        if self.end_height is None:
            return None
        return self.end_height - self.start_height


@dataclass(frozen=True, slots=True)
class BalanceSnapshot:
    account: str
    amount: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True, slots=True)
class Block:
    height: int
    timestamp: float
    transactions: tuple[str, ...] = ()
    resource_used: int = 0
    resource_limit: int = 0

    @property
    def tx_count(self) -> int:
        return len(self.transactions)


@dataclass(frozen=True, slots=True)
class Receipt:
    handle: str
    included: bool
    block_height: int | None = None
