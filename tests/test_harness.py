import io
import json

import pytest
from conftest import GENESIS, make_settings

from ledgerbench.errors import SetupFailure
from ledgerbench.generator import BlockCapacityEstimator, PendingCountEstimator
from ledgerbench.harness import BenchmarkRun
from ledgerbench.ledger.memory import InMemoryLedger
from ledgerbench.models import Sender
from ledgerbench.report import JsonLinesSink

FEE_A, FEE_B = "0x" + "a" * 40, "0x" + "b" * 40


@pytest.fixture
async def mining_ledger():
    ledger = InMemoryLedger(
        block_time=0.05,
        genesis_time=GENESIS,
        submit_delay=0.001,
        fee_split={FEE_A: 2, FEE_B: 1},
    )
    ledger.start_mining()
    yield ledger
    await ledger.aclose()


def _settings(capacity=None, **run):
    return make_settings(
        ledger={"backend": "memory"},
        run={"duration": 0, "submit_timeout": 5.0, **run},
        poller={"interval": 0.05, "timeout": 10.0},
        capacity={"target_block_time": 0.05, "target_throughput": 0, **(capacity or {})},
        invariants={
            "receives": [FEE_A],
            "ratios": [{"numerator": FEE_A, "denominator": FEE_B, "target": 2.0}],
        },
    )


async def test_steady_end_to_end(mining_ledger):
    senders = mining_ledger.create_senders(10)
    out = io.StringIO()
    settings = _settings(strategy="steady", target_count=100, batch={"size": 5, "pause": 0.0})

    report = await BenchmarkRun(mining_ledger, senders, settings, sink=JsonLinesSink(out)).execute()

    m = report.metrics
    assert m["sent"] == 100
    assert m["accepted"] == 100
    assert m["included"] == 100
    assert m["included_estimated"] is False
    assert m["send_rate"] > 0
    assert m["inclusion_rate"] > 0
    assert m["block_time"]["status"] == "exact"
    assert report.send["groups"] == 20
    assert report.inclusion["completion"] == "all"

    for i, s in enumerate(senders):
        rng = report.sequences[s.address]
        assert rng == {"start": i, "end": i + 9, "issued": 10, "contiguous": True}

    assert report.invariants_passed
    assert [c["name"] for c in report.invariants] == [f"receives:{FEE_A}", f"ratio:{FEE_A}/{FEE_B}"]
    assert [(p["name"], p["passed"]) for p in report.parameters] == [
        ("block_time", True), ("resource_limit", True), ("resource_limit_range", True),
    ]

    line = json.loads(out.getvalue())
    assert line["run_id"] == report.run_id
    assert line["ok"] is True


async def test_burst_end_to_end(mining_ledger):
    senders = mining_ledger.create_senders(5)
    report = await BenchmarkRun(mining_ledger, senders, _settings(strategy="burst", target_count=50)).execute()

    assert report.metrics["included"] == 50
    assert all(r["contiguous"] for r in report.sequences.values())


async def test_saturation_end_to_end(mining_ledger):
    senders = mining_ledger.create_senders(5)
    settings = _settings(
        strategy="saturation",
        target_count=60,
        saturation={
            "initial_fill": 30,
            "fill_chunk": 10,
            "refill_interval": 0.05,
            "refill_cap": 20,
            "per_block_estimate": 10,
            "estimator": "blocks",
        },
    )

    report = await BenchmarkRun(mining_ledger, senders, settings).execute()

    assert report.metrics["sent"] == 60
    assert report.metrics["included"] == 60
    assert report.send["initial_fill"] == 30
    assert report.inclusion["completion"] == "all"


async def test_setup_failure_sends_nothing(mining_ledger):
    senders = mining_ledger.create_senders(3)
    mining_ledger.reachable = False

    with pytest.raises(SetupFailure):
        await BenchmarkRun(mining_ledger, senders, _settings(strategy="burst", target_count=10)).execute()
    assert mining_ledger.calls["submit"] == 0


def test_no_senders_is_setup_failure():
    with pytest.raises(SetupFailure):
        BenchmarkRun(InMemoryLedger(), [], _settings())


async def test_failed_parameter_checks_fail_the_run(mining_ledger):
    senders = mining_ledger.create_senders(2)
    settings = _settings(
        capacity={"expected_chain_id": 12000, "min_theoretical_capacity": 1e9},
        strategy="burst",
        target_count=10,
    )

    report = await BenchmarkRun(mining_ledger, senders, settings).execute()

    assert report.invariants_passed
    failed = [p for p in report.parameters if not p["passed"]]
    assert [p["name"] for p in failed] == ["chain_id", "theoretical_capacity"]
    assert failed[0]["observed"] == 1337
    assert not report.ok
    assert report.to_dict()["ok"] is False


async def test_repeated_sender_is_setup_failure(mining_ledger):
    [s] = mining_ledger.create_senders(1)
    run = BenchmarkRun(mining_ledger, [s, Sender(address=s.address)], _settings(strategy="burst", target_count=4))

    with pytest.raises(SetupFailure, match="duplicate senders"):
        await run.execute()
    assert run.phase == "failed"
    assert mining_ledger.calls["submit"] == 0


class NoPoolLedger:
    """An in-memory ledger that hides its pending pool."""

    def __init__(self, inner: InMemoryLedger) -> None:
        self.inner = inner

    def __getattr__(self, name):
        if name == "pending_count":
            raise AttributeError(name)
        return getattr(self.inner, name)


def test_pending_estimator_reads_the_pool():
    ledger = InMemoryLedger()
    settings = _settings(strategy="saturation", saturation={"estimator": "pending", "initial_fill": 500})
    est = BenchmarkRun(ledger, ledger.create_senders(1), settings)._estimator()
    assert isinstance(est, PendingCountEstimator)
    assert est.pool is ledger
    assert est.target == 500


def test_pending_estimator_falls_back_without_a_pool(caplog):
    inner = InMemoryLedger()
    settings = _settings(strategy="saturation", saturation={"estimator": "pending", "per_block_estimate": 7})
    est = BenchmarkRun(NoPoolLedger(inner), inner.create_senders(1), settings)._estimator()
    assert isinstance(est, BlockCapacityEstimator)
    assert est.per_block == 7
    assert "no pending pool" in caplog.text


def test_blocks_estimator_is_the_default():
    ledger = InMemoryLedger()
    est = BenchmarkRun(ledger, ledger.create_senders(1), _settings(strategy="saturation"))._estimator()
    assert isinstance(est, BlockCapacityEstimator)
