"""XRPL ledger adapter on top of xrpl-py.

Blocks are validated ledgers. XRPL has no per-transaction gas, so the
resource accounting is one unit per transaction against the server's
``expected_ledger_size``; configure ``resource_cost_per_tx = 1`` for capacity
figures to make sense.
"""

import asyncio
import hashlib
import logging

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.ledger import get_latest_validated_ledger_sequence
from xrpl.clients import XRPLRequestFailureException
from xrpl.constants import CryptoAlgorithm
from xrpl.core.binarycodec import encode, encode_for_signing
from xrpl.core.keypairs import sign
from xrpl.models import SubmitOnly
from xrpl.models.requests import AccountInfo, Fee, Ledger, Tx
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

import ledgerbench.constants as C
from ledgerbench.errors import LedgerError, SubmissionRejected
from ledgerbench.models import Block, Receipt, Sender, SubmissionRequest

log = logging.getLogger("ledgerbench.ledger.xrpl")

RIPPLE_EPOCH = 946_684_800
HORIZON = 15  # Transactions expire if not validated within 15 ledgers (~45-60 seconds)


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def _txid_from_signed_blob_hex(signed_blob_hex: str) -> str:
    # XRPL txid = SHA512Half(0x54584E00 || signed_bytes)
    return _sha512half(bytes.fromhex("54584E00") + bytes.fromhex(signed_blob_hex)).hex().upper()


def sender_from_seed(seed: str) -> Sender:
    wallet = Wallet.from_seed(seed, algorithm=CryptoAlgorithm.SECP256K1)
    return Sender(address=wallet.address, credential=wallet)


class XrplLedger:
    def __init__(self, rpc_url: str, *, timeout: float = C.RPC_TIMEOUT, client=None) -> None:
        self.client = client or AsyncJsonRpcClient(rpc_url)
        self.timeout = timeout
        self._base_fee: int | None = None

    async def _rpc(self, req):
        try:
            return await asyncio.wait_for(self.client.request(req), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise LedgerError(f"{req.method} timed out") from e
        except (XRPLRequestFailureException, httpx.HTTPError) as e:
            raise LedgerError(f"{req.method}: {e}") from e

    async def _fee(self) -> dict:
        r = await self._rpc(Fee())
        if not r.is_successful():
            raise LedgerError(f"fee: {r.result}")
        return r.result

    async def _current_fee(self) -> int:
        if self._base_fee is None:
            self._base_fee = int((await self._fee())["drops"]["base_fee"])
        return self._base_fee

    def sign(self, request: SubmissionRequest, fee: int, last_ledger_seq: int) -> tuple[str, str]:
        wallet: Wallet = request.sender.credential
        tx = Payment(
            account=request.sender.address,
            destination=request.recipient,
            amount=str(request.value),
        ).to_xrpl()
        if tx.get("Flags") == 0:
            del tx["Flags"]
        tx["Sequence"] = request.sequence
        tx["Fee"] = str(fee)
        tx["SigningPubKey"] = wallet.public_key
        tx["LastLedgerSequence"] = last_ledger_seq

        signing_blob = encode_for_signing(tx)
        to_sign = signing_blob if isinstance(signing_blob, str) else signing_blob.hex()
        tx["TxnSignature"] = sign(to_sign, wallet.private_key)
        signed_blob_hex = encode(tx)
        return signed_blob_hex, _txid_from_signed_blob_hex(signed_blob_hex)

    async def submit(self, request: SubmissionRequest) -> str:
        fee = request.price or await self._current_fee()
        lls = await self.get_block_height() + HORIZON
        blob, local_txid = self.sign(request, fee, lls)
        resp = await self._rpc(SubmitOnly(tx_blob=blob))
        res = resp.result
        er = res.get("engine_result")
        if not resp.is_successful():
            raise SubmissionRejected(str(res.get("error_message") or res.get("error") or res), code=res.get("error"))
        # tes* applied, terQUEUED waits in the queue; everything else never makes it to a ledger
        if isinstance(er, str) and (er.startswith("tes") or er == "terQUEUED"):
            return res.get("tx_json", {}).get("hash") or local_txid
        raise SubmissionRejected(res.get("engine_result_message", er or "unknown"), code=er)

    async def get_sequence_number(self, account: str) -> int:
        ai = await self._rpc(AccountInfo(account=account, ledger_index="current", strict=True))
        if not ai.is_successful():
            raise LedgerError(f"account_info {account}: {ai.result.get('error')}")
        return int(ai.result["account_data"]["Sequence"])

    async def get_balance(self, account: str) -> int:
        ai = await self._rpc(AccountInfo(account=account, ledger_index="validated"))
        if not ai.is_successful():
            raise LedgerError(f"account_info {account}: {ai.result.get('error')}")
        return int(ai.result["account_data"]["Balance"])

    async def get_block_height(self) -> int:
        try:
            return await asyncio.wait_for(get_latest_validated_ledger_sequence(client=self.client), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise LedgerError("ledger height timed out") from e
        except (XRPLRequestFailureException, httpx.HTTPError) as e:
            raise LedgerError(f"ledger height: {e}") from e

    async def get_block(self, height: int) -> Block | None:
        r = await self._rpc(Ledger(ledger_index=height, transactions=True))
        if not r.is_successful():
            return None
        ledger = r.result["ledger"]
        txns = tuple(t if isinstance(t, str) else t.get("hash") for t in ledger.get("transactions", []))
        expected = int((await self._fee())["expected_ledger_size"])
        return Block(
            height=int(ledger["ledger_index"]),
            timestamp=float(ledger["close_time"]) + RIPPLE_EPOCH,
            transactions=txns,
            resource_used=len(txns),
            resource_limit=expected,
        )

    async def get_receipt(self, handle: str) -> Receipt | None:
        txr = await self._rpc(Tx(transaction=handle))
        if not txr.is_successful() or not txr.result.get("validated"):
            # txnNotFound or still in the open ledger
            return None
        return Receipt(handle=handle, included=True, block_height=int(txr.result["ledger_index"]))

    async def pending_count(self) -> int:
        return int((await self._fee())["current_queue_size"])

    async def aclose(self) -> None:
        return None
