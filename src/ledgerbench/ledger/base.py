from typing import Protocol, runtime_checkable

from ledgerbench.models import Block, Receipt, SubmissionRequest


class Ledger(Protocol):
    """The request/response surface the harness drives.

    ``submit`` returns a handle or raises ``SubmissionRejected``. ``get_receipt``
    returns ``None`` while the ledger has not seen the handle in a block.
    Transport failures raise ``LedgerError``.
    """

    async def submit(self, request: SubmissionRequest) -> str: ...
    async def get_sequence_number(self, account: str) -> int: ...
    async def get_balance(self, account: str) -> int: ...
    async def get_block_height(self) -> int: ...
    async def get_block(self, height: int) -> Block | None: ...
    async def get_receipt(self, handle: str) -> Receipt | None: ...
    async def aclose(self) -> None: ...


@runtime_checkable
class PendingPool(Protocol):
    """Optional capability: size of the ledger's pending queue."""

    async def pending_count(self) -> int: ...
