"""EVM JSON-RPC ledger adapter.

Transactions are signed locally with ``eth_account`` and pushed with
``eth_sendRawTransaction``; everything else is a plain JSON-RPC read.
"""

import asyncio
import itertools
import logging

import httpx
from eth_account import Account

import ledgerbench.constants as C
from ledgerbench.errors import LedgerError, SubmissionRejected
from ledgerbench.models import Block, Receipt, Sender, SubmissionRequest

log = logging.getLogger("ledgerbench.ledger.evm")


def _int(v: str | int | None) -> int:
    if v is None:
        return 0
    if isinstance(v, int):
        return v
    return int(v, 16)


def sender_from_key(private_key: str) -> Sender:
    acct = Account.from_key(private_key)
    return Sender(address=acct.address, credential=private_key)


class EvmLedger:
    def __init__(
        self,
        rpc_url: str,
        *,
        chain_id: int | None = None,
        timeout: float = C.RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.chain_id = chain_id or None
        self._gas_price: int | None = None
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(max_connections=500, max_keepalive_connections=100),
        )

    async def _rpc(self, method: str, *params):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            r = await self._client.post(self.rpc_url, json=payload)
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"{method}: {e.__class__.__name__}: {e}") from e
        if body.get("error"):
            err = body["error"]
            raise JsonRpcError(method, err.get("code"), err.get("message", str(err)))
        return body.get("result")

    async def connect(self) -> None:
        """Resolve the chain id and gas price once; both are needed to sign."""
        if self.chain_id is None:
            self.chain_id = _int(await self._rpc("eth_chainId"))
        if self._gas_price is None:
            self._gas_price = _int(await self._rpc("eth_gasPrice"))
        log.info("Connected to %s (chain id %s, gas price %s)", self.rpc_url, self.chain_id, self._gas_price)

    def sign(self, request: SubmissionRequest) -> tuple[str, str]:
        tx = {
            "to": request.recipient,
            "value": request.value,
            "gas": request.resource_limit,
            "gasPrice": request.price or self._gas_price or 0,
            "nonce": request.sequence,
            "chainId": self.chain_id,
        }
        signed = Account.sign_transaction(tx, request.sender.credential)
        return "0x" + signed.raw_transaction.hex().removeprefix("0x"), "0x" + signed.hash.hex().removeprefix("0x")

    async def submit(self, request: SubmissionRequest) -> str:
        if self.chain_id is None or self._gas_price is None:
            await self.connect()
        raw, local_hash = self.sign(request)
        try:
            handle = await self._rpc("eth_sendRawTransaction", raw)
        except JsonRpcError as e:
            raise SubmissionRejected(e.message, code=str(e.code)) from e
        return handle or local_hash

    async def get_chain_id(self) -> int:
        return _int(await self._rpc("eth_chainId"))

    async def get_sequence_number(self, account: str) -> int:
        return _int(await self._rpc("eth_getTransactionCount", account, "pending"))

    async def get_balance(self, account: str) -> int:
        return _int(await self._rpc("eth_getBalance", account, "latest"))

    async def get_block_height(self) -> int:
        return _int(await self._rpc("eth_blockNumber"))

    async def get_block(self, height: int) -> Block | None:
        b = await self._rpc("eth_getBlockByNumber", hex(height), False)
        if not b:
            return None
        return Block(
            height=_int(b["number"]),
            timestamp=float(_int(b["timestamp"])),
            transactions=tuple(t if isinstance(t, str) else t["hash"] for t in b.get("transactions", [])),
            resource_used=_int(b.get("gasUsed")),
            resource_limit=_int(b.get("gasLimit")),
        )

    async def get_receipt(self, handle: str) -> Receipt | None:
        r = await self._rpc("eth_getTransactionReceipt", handle)
        if not r or r.get("blockNumber") is None:
            return None
        return Receipt(handle=handle, included=True, block_height=_int(r["blockNumber"]))

    async def pending_count(self) -> int:
        status = await self._rpc("txpool_status")
        return _int(status.get("pending")) + _int(status.get("queued"))

    async def aclose(self) -> None:
        await self._client.aclose()


class JsonRpcError(LedgerError):
    def __init__(self, method: str, code: int | None, message: str) -> None:
        super().__init__(f"{method}: [{code}] {message}")
        self.code = code
        self.message = message


async def probe(
    rpc_url: str,
    max_retries: int = 30,
    retry_delay: float = 2.0,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Probe the RPC endpoint with retries until it answers ``eth_blockNumber``."""
    payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_blockNumber", "params": []}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=C.RPC_TIMEOUT, transport=transport) as http:
                r = await http.post(rpc_url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise LedgerError(f"{rpc_url} unreachable: {e}") from e
