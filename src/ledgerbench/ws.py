"""
New-heads listener.

Keeps a websocket subscription to the ledger's head stream and remembers the
latest height, so the saturation refill loop can read it without an RPC
round-trip. Reconnects with exponential backoff; falls back to the ledger's
own ``get_block_height`` until the first head arrives.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable

import websockets

import ledgerbench.constants as C

log = logging.getLogger("ledgerbench.ws")

RECV_TIMEOUT = 90.0
RECONNECT_BASE = 1.0
RECONNECT_MAX = 10.0


def subscribe_message(backend: C.Backend) -> dict:
    if backend == C.Backend.XRPL:
        return {"id": 1, "command": "subscribe", "streams": ["ledger"]}
    return {"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}


def parse_height(raw: str | bytes) -> int | None:
    """Height carried by a head notification, or None for anything else."""
    try:
        msg = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(msg, dict):
        return None
    # EVM: {"method": "eth_subscription", "params": {"result": {"number": "0x1b4", ...}}}
    if msg.get("method") == "eth_subscription":
        result = (msg.get("params") or {}).get("result")
        number = result.get("number") if isinstance(result, dict) else None
        return int(number, 16) if isinstance(number, str) else None
    # XRPL: {"type": "ledgerClosed", "ledger_index": 123, ...}
    if msg.get("type") == "ledgerClosed":
        idx = msg.get("ledger_index")
        return int(idx) if idx is not None else None
    return None


class HeadTracker:
    def __init__(
        self,
        ws_url: str,
        backend: C.Backend = C.Backend.EVM,
        fallback: Callable[[], Awaitable[int]] | None = None,
    ) -> None:
        self.ws_url = ws_url
        self.backend = backend
        self.fallback = fallback
        self.height: int | None = None
        self.heads_seen = 0
        self.changed = asyncio.Event()

    def observe(self, height: int) -> None:
        if self.height is None or height > self.height:
            self.height = height
            self.heads_seen += 1
            self.changed.set()

    async def current(self) -> int:
        """Latest seen height. Usable as the generator's height source."""
        if self.height is None and self.fallback is not None:
            return await self.fallback()
        if self.height is None:
            raise RuntimeError("no head observed yet")
        return self.height

    async def listen(self, stop: asyncio.Event) -> None:
        backoff = RECONNECT_BASE

        while not stop.is_set():
            try:
                async with websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20, close_timeout=1) as ws:
                    log.info("WS connected: %s", self.ws_url)
                    await ws.send(json.dumps(subscribe_message(self.backend)))
                    backoff = RECONNECT_BASE

                    while not stop.is_set():
                        recv_task = asyncio.create_task(ws.recv())
                        halt_task = asyncio.create_task(stop.wait())
                        done, pending = await asyncio.wait(
                            {recv_task, halt_task}, timeout=RECV_TIMEOUT, return_when=asyncio.FIRST_COMPLETED
                        )
                        for t in pending:
                            t.cancel()
                        if halt_task in done:
                            return
                        if not done:
                            log.warning("No WS message in %.0fs, reconnecting", RECV_TIMEOUT)
                            break
                        height = parse_height(recv_task.result())
                        if height is not None:
                            self.observe(height)
            except asyncio.CancelledError:
                log.info("WS listener cancelled")
                raise
            except (OSError, websockets.WebSocketException) as e:
                log.error("WS connection error: %s", e)

            if stop.is_set():
                break
            log.info("WS reconnecting in %.1fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RECONNECT_MAX)

        log.info("WS listener stopped")
