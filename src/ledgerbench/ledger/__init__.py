import json
import logging
from pathlib import Path

import ledgerbench.constants as C
from ledgerbench.config import LedgerConfig
from ledgerbench.errors import LedgerError, SetupFailure
from ledgerbench.ledger.base import Ledger, PendingPool
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.models import Sender

log = logging.getLogger("ledgerbench.ledger")


def open_ledger(cfg: LedgerConfig) -> Ledger:
    if cfg.backend == C.Backend.EVM:
        from ledgerbench.ledger.evm import EvmLedger

        return EvmLedger(cfg.rpc_url, chain_id=cfg.chain_id or None, timeout=cfg.rpc_timeout)
    if cfg.backend == C.Backend.XRPL:
        from ledgerbench.ledger.xrpl_ledger import XrplLedger

        return XrplLedger(cfg.rpc_url, timeout=cfg.rpc_timeout)
    if cfg.backend == C.Backend.MEMORY:
        return InMemoryLedger()
    raise ValueError(f"unknown ledger backend {cfg.backend!r}")


def load_senders(backend: C.Backend, keys_file: str | Path) -> list[Sender]:
    """Read sender credentials from a JSON list of ``{"privateKey": ...}`` or ``{"seed": ...}`` entries."""
    try:
        entries = json.loads(Path(keys_file).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise SetupFailure(f"cannot load sender keys from {keys_file}: {e}") from e
    if not entries:
        raise SetupFailure(f"no senders in {keys_file}")

    senders = []
    for entry in entries:
        try:
            if backend == C.Backend.XRPL:
                from ledgerbench.ledger.xrpl_ledger import sender_from_seed

                senders.append(sender_from_seed(entry["seed"]))
            else:
                from ledgerbench.ledger.evm import sender_from_key

                senders.append(sender_from_key(entry["privateKey"]))
        except (KeyError, ValueError) as e:
            raise SetupFailure(f"bad sender entry in {keys_file}: {e}") from e
    seen: set[str] = set()
    for s in senders:
        if s.address in seen:
            raise SetupFailure(f"sender {s.address} listed twice in {keys_file}")
        seen.add(s.address)
    log.info("Loaded %s senders from %s", len(senders), keys_file)
    return senders


async def open_backend(cfg: LedgerConfig, senders_cfg: dict) -> tuple[Ledger, list[Sender]]:
    """Ledger plus the senders that will drive it. The memory backend mines on its own block time."""
    if cfg.backend == C.Backend.EVM and cfg.probe_retries > 0:
        from ledgerbench.ledger.evm import probe

        try:
            await probe(cfg.rpc_url, max_retries=cfg.probe_retries)
        except LedgerError as e:
            raise SetupFailure(str(e)) from e

    ledger = open_ledger(cfg)
    try:
        if isinstance(ledger, InMemoryLedger):
            senders = ledger.create_senders(int(senders_cfg.get("count", 10)))
            ledger.start_mining()
        else:
            senders = load_senders(cfg.backend, senders_cfg.get("keys_file", ""))
    except BaseException:
        await ledger.aclose()
        raise
    return ledger, senders


__all__ = [
    "InMemoryLedger",
    "Ledger",
    "PendingPool",
    "load_senders",
    "open_backend",
    "open_ledger",
]
