import pytest

from ledgerbench.config import Settings, apply_overrides, load_config
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.models import Sender, SubmissionRequest

GENESIS = 1_700_000_000.0


@pytest.fixture
def ledger():
    return InMemoryLedger(block_time=0.05, genesis_time=GENESIS)


@pytest.fixture
def senders(ledger):
    return ledger.create_senders(10)


def make_request(seq: int, sender: str = "0xaaaa", recipient: str = "0xbbbb", value: int = 1) -> SubmissionRequest:
    return SubmissionRequest(
        sender=Sender(address=sender),
        recipient=recipient,
        value=value,
        resource_limit=21_000,
        sequence=seq,
    )


def make_settings(**sections) -> Settings:
    """Packaged defaults, no environment, plus ``section={key: value}`` overrides."""
    cfg = load_config(env={})
    cfg["invariants"] = {"receives": [], "ratios": []}
    return Settings.from_config(apply_overrides(cfg, sections))
