"""Derived measurements. Pure functions over recorded data, no ledger calls.

Anything that would divide by zero or produce a non-finite number is
``None``, which reports render as ``"undefined"``.
"""

import math
import statistics
from dataclasses import asdict, dataclass, field

import ledgerbench.constants as C
from ledgerbench.models import Block, RunWindow


def safe_div(num: float | None, den: float | None) -> float | None:
    if num is None or den is None or den <= 0:
        return None
    r = num / den
    return r if math.isfinite(r) else None


@dataclass
class CadenceStats:
    intervals: int
    mean: float
    min: float
    max: float
    deltas: list[float] = field(default_factory=list, repr=False)


def block_cadence(blocks: list[Block]) -> CadenceStats | None:
    """Spacing between consecutive heights. Gaps in the height sequence are skipped."""
    ordered = sorted(blocks, key=lambda b: b.height)
    deltas = [
        cur.timestamp - prev.timestamp
        for prev, cur in zip(ordered, ordered[1:])
        if cur.height == prev.height + 1
    ]
    if not deltas:
        return None
    return CadenceStats(
        intervals=len(deltas),
        mean=statistics.fmean(deltas),
        min=min(deltas),
        max=max(deltas),
        deltas=deltas,
    )


def send_rate(accepted: int, duration: float | None) -> float | None:
    """Accepted submissions per second of send phase. Not a throughput figure."""
    return safe_div(accepted, duration)


def inclusion_rate(included: int, duration: float | None, blocks_produced: int | None) -> float | None:
    """Authoritative throughput: included transactions per second of inclusion phase."""
    if not blocks_produced or blocks_produced <= 0:
        return None
    return safe_div(included, duration)


def max_per_block(resource_limit: int | None, cost_per_tx: int | None) -> int | None:
    if not resource_limit or not cost_per_tx or cost_per_tx <= 0:
        return None
    return resource_limit // cost_per_tx


def theoretical_capacity(resource_limit: int | None, cost_per_tx: int | None, mean_cadence: float | None) -> float | None:
    return safe_div(max_per_block(resource_limit, cost_per_tx), mean_cadence)


def utilization(throughput: float | None, capacity: float | None) -> float | None:
    return safe_div(throughput, capacity)


def block_fill(blocks: list[Block]) -> dict:
    """Average transactions per block and average resource utilization."""
    if not blocks:
        return {"blocks": 0, "avg_tx_per_block": None, "avg_resource_utilization": None}
    utils = [b.resource_used / b.resource_limit for b in blocks if b.resource_limit > 0]
    return {
        "blocks": len(blocks),
        "avg_tx_per_block": statistics.fmean(b.tx_count for b in blocks),
        "avg_resource_utilization": statistics.fmean(utils) if utils else None,
    }


def block_time_check(cadence: CadenceStats | None, target: float | None) -> dict | None:
    """Observed cadence against a target block time."""
    if target is None:
        return None
    if cadence is None:
        return {"target": target, "actual": None, "deviation": None, "status": C.UNDEFINED}
    deviation = abs(cadence.mean - target)
    if deviation < C.BLOCK_TIME_EXACT:
        status = "exact"
    elif deviation < C.BLOCK_TIME_GOOD:
        status = "good"
    else:
        status = "off_target"
    eps = 1e-9
    return {
        "target": target,
        "actual": cadence.mean,
        "deviation": deviation,
        "status": status,
        "distribution": {
            "at_target": sum(1 for d in cadence.deltas if abs(d - target) <= eps),
            "below": sum(1 for d in cadence.deltas if d < target - eps),
            "above": sum(1 for d in cadence.deltas if d > target + eps),
        },
    }


def resource_limit_check(observed: int | None, expected: int | None, allowed: tuple[int, int] | None) -> dict | None:
    if expected is None and allowed is None:
        return None
    out: dict = {"observed": observed, "expected": expected}
    if expected is not None:
        out["matches"] = observed == expected
    if allowed is not None:
        lo, hi = allowed
        out["range"] = [lo, hi]
        out["in_range"] = observed is not None and lo <= observed <= hi
    return out


def latency_stats(values: list[float]) -> dict | None:
    vals = sorted(v for v in values if v is not None and math.isfinite(v))
    if not vals:
        return None

    def pct(p: float) -> float:
        idx = min(len(vals) - 1, max(0, math.ceil(p * len(vals)) - 1))
        return vals[idx]

    return {
        "count": len(vals),
        "mean": statistics.fmean(vals),
        "p50": pct(0.50),
        "p95": pct(0.95),
        "max": vals[-1],
    }


@dataclass
class Metrics:
    sent: int
    accepted: int
    failed: int
    included: int
    included_estimated: bool
    send_duration: float | None
    inclusion_duration: float | None
    blocks_produced: int | None
    send_rate: float | None
    inclusion_rate: float | None
    success_rate: float | None
    cadence: CadenceStats | None
    max_tx_per_block: int | None
    theoretical_capacity: float | None
    utilization: float | None
    target_achievement: float | None = None
    fill: dict = field(default_factory=dict)
    block_time: dict | None = None
    resource_limit: dict | None = None
    submit_latency: dict | None = None
    inclusion_latency: dict | None = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["cadence"] = (
            None if self.cadence is None
            else {"intervals": self.cadence.intervals, "mean": self.cadence.mean, "min": self.cadence.min, "max": self.cadence.max}
        )
        d["send_rate_authoritative"] = False
        return d


def compute(
    *,
    window: RunWindow,
    blocks: list[Block],
    sent: int,
    accepted: int,
    included: int,
    included_estimated: bool = False,
    send_duration: float | None,
    inclusion_duration: float | None,
    resource_cost_per_tx: int,
    resource_limit_per_block: int | None = None,
    target_throughput: float | None = None,
    target_block_time: float | None = None,
    expected_resource_limit: int | None = None,
    resource_limit_range: tuple[int, int] | None = None,
    submit_latencies: list[float] | None = None,
    inclusion_latencies: list[float] | None = None,
) -> Metrics:
    """Everything the report needs, from the window, the window's blocks and the counts."""
    produced = window.blocks_produced
    cadence = block_cadence(blocks)
    in_window = [b for b in blocks if b.height > window.start_height]

    observed_limit = max((b.height, b.resource_limit) for b in blocks)[1] if blocks else None
    limit = resource_limit_per_block or observed_limit

    throughput = inclusion_rate(included, inclusion_duration, produced)
    capacity = theoretical_capacity(limit, resource_cost_per_tx, cadence.mean if cadence else None)
    if not produced or produced <= 0:
        capacity = None

    return Metrics(
        sent=sent,
        accepted=accepted,
        failed=sent - accepted,
        included=included,
        included_estimated=included_estimated,
        send_duration=send_duration,
        inclusion_duration=inclusion_duration,
        blocks_produced=produced,
        send_rate=send_rate(accepted, send_duration),
        inclusion_rate=throughput,
        success_rate=safe_div(included, accepted),
        cadence=cadence,
        max_tx_per_block=max_per_block(limit, resource_cost_per_tx),
        theoretical_capacity=capacity,
        utilization=utilization(throughput, capacity),
        target_achievement=safe_div(throughput, target_throughput),
        fill=block_fill(in_window),
        block_time=block_time_check(cadence, target_block_time),
        resource_limit=resource_limit_check(observed_limit, expected_resource_limit, resource_limit_range),
        submit_latency=latency_stats(submit_latencies or []),
        inclusion_latency=latency_stats(inclusion_latencies or []),
    )
