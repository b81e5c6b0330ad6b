import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import ledgerbench.constants as C

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

ENV_OVERRIDES = {
    "LEDGERBENCH_BACKEND": ("ledger", "backend"),
    "LEDGERBENCH_RPC_URL": ("ledger", "rpc_url"),
    "LEDGERBENCH_WS_URL": ("ledger", "ws_url"),
    "LEDGERBENCH_KEYS_FILE": ("senders", "keys_file"),
}


def _merge(base: dict, extra: dict) -> dict:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | Path | None = None, *, env: dict[str, str] | None = None) -> dict:
    """Packaged defaults, then the optional user file, then environment overrides."""
    cfg = tomllib.loads(config_file.read_text())
    if path is not None:
        cfg = _merge(cfg, tomllib.loads(Path(path).read_text()))
    env = os.environ if env is None else env
    for var, (section, key) in ENV_OVERRIDES.items():
        if env.get(var):
            cfg.setdefault(section, {})[key] = env[var]
    return cfg


def apply_overrides(cfg: dict, overrides: dict[str, dict[str, Any]]) -> dict:
    """Merge ``{section: {key: value}}`` overrides, skipping ``None`` values."""
    cleaned = {
        section: {k: v for k, v in values.items() if v is not None}
        for section, values in overrides.items()
    }
    return _merge(cfg, cleaned)


@dataclass
class LedgerConfig:
    backend: C.Backend = C.Backend.EVM
    rpc_url: str = "http://localhost:8545"
    ws_url: str = ""
    rpc_timeout: float = C.RPC_TIMEOUT
    chain_id: int = 0
    probe_retries: int = 0

    @classmethod
    def from_config(cls, cfg: dict) -> "LedgerConfig":
        s = cfg.get("ledger", {})
        return cls(
            backend=C.Backend(s.get("backend", C.Backend.EVM)),
            rpc_url=s.get("rpc_url", cls.rpc_url),
            ws_url=s.get("ws_url", ""),
            rpc_timeout=float(s.get("rpc_timeout", C.RPC_TIMEOUT)),
            chain_id=int(s.get("chain_id", 0)),
            probe_retries=int(s.get("probe_retries", 0)),
        )


@dataclass
class BatchConfig:
    size: int = 5
    pause: float = 0.0


@dataclass
class SaturationConfig:
    initial_fill: int = C.INITIAL_FILL
    fill_chunk: int = C.FILL_CHUNK
    refill_interval: float = C.REFILL_INTERVAL
    refill_cap: int = C.REFILL_CAP
    per_block_estimate: int = C.PER_BLOCK_ESTIMATE
    estimator: str = "blocks"


@dataclass
class RunConfig:
    strategy: C.Strategy = C.Strategy.BURST
    target_count: int | None = None
    duration: float | None = None
    send_timeout: float = C.SEND_TIMEOUT
    submit_timeout: float = C.SUBMIT_TIMEOUT
    value: int = 1
    resource_limit: int = C.TRANSFER_COST
    price: int | None = None
    batch: BatchConfig = field(default_factory=BatchConfig)
    saturation: SaturationConfig = field(default_factory=SaturationConfig)

    @classmethod
    def from_config(cls, cfg: dict) -> "RunConfig":
        r = cfg.get("run", {})
        b = r.get("batch", {})
        s = r.get("saturation", {})
        duration = float(r.get("duration") or 0)
        return cls(
            strategy=C.Strategy(r.get("strategy", C.Strategy.BURST)),
            target_count=int(r["target_count"]) if r.get("target_count") else None,
            duration=duration or None,
            send_timeout=float(r.get("send_timeout", C.SEND_TIMEOUT)),
            submit_timeout=float(r.get("submit_timeout", C.SUBMIT_TIMEOUT)),
            value=int(r.get("value", 1)),
            resource_limit=int(r.get("resource_limit", C.TRANSFER_COST)),
            price=int(r["price"]) if r.get("price") else None,
            batch=BatchConfig(size=int(b.get("size", 5)), pause=float(b.get("pause", 0.0))),
            saturation=SaturationConfig(
                initial_fill=int(s.get("initial_fill", C.INITIAL_FILL)),
                fill_chunk=int(s.get("fill_chunk", C.FILL_CHUNK)),
                refill_interval=float(s.get("refill_interval", C.REFILL_INTERVAL)),
                refill_cap=int(s.get("refill_cap", C.REFILL_CAP)),
                per_block_estimate=int(s.get("per_block_estimate", C.PER_BLOCK_ESTIMATE)),
                estimator=s.get("estimator", "blocks"),
            ),
        )

    @property
    def count(self) -> int | None:
        """Requests to send. Unset, saturation is bounded only by time; the others send ``TARGET_COUNT``."""
        if self.target_count is not None:
            return self.target_count
        return None if self.strategy == C.Strategy.SATURATION else C.TARGET_COUNT


@dataclass
class PollerConfig:
    interval: float = C.POLL_INTERVAL
    timeout: float = C.POLL_TIMEOUT
    completion_fraction: float = C.COMPLETION_FRACTION
    sampling_threshold: int = C.SAMPLING_THRESHOLD
    sample_cap: int = C.SAMPLE_CAP
    max_concurrency: int = C.POLL_CONCURRENCY

    @classmethod
    def from_config(cls, cfg: dict) -> "PollerConfig":
        p = cfg.get("poller", {})
        return cls(
            interval=float(p.get("interval", C.POLL_INTERVAL)),
            timeout=float(p.get("timeout", C.POLL_TIMEOUT)),
            completion_fraction=float(p.get("completion_fraction", C.COMPLETION_FRACTION)),
            sampling_threshold=int(p.get("sampling_threshold", C.SAMPLING_THRESHOLD)),
            sample_cap=int(p.get("sample_cap", C.SAMPLE_CAP)),
            max_concurrency=int(p.get("max_concurrency", C.POLL_CONCURRENCY)),
        )


@dataclass
class CapacityConfig:
    resource_cost_per_tx: int = C.TRANSFER_COST
    resource_limit_per_block: int | None = None
    expected_resource_limit: int | None = None
    resource_limit_range: tuple[int, int] | None = None
    target_block_time: float | None = None
    target_throughput: float | None = None
    max_blocks_analyzed: int = C.MAX_BLOCKS_ANALYZED
    expected_chain_id: int | None = None
    min_theoretical_capacity: float | None = None

    @classmethod
    def from_config(cls, cfg: dict) -> "CapacityConfig":
        c = cfg.get("capacity", {})
        rng = c.get("resource_limit_range")
        return cls(
            resource_cost_per_tx=int(c.get("resource_cost_per_tx", C.TRANSFER_COST)),
            resource_limit_per_block=int(c["resource_limit_per_block"]) if c.get("resource_limit_per_block") else None,
            expected_resource_limit=int(c["expected_resource_limit"]) if c.get("expected_resource_limit") else None,
            resource_limit_range=(int(rng[0]), int(rng[1])) if rng else None,
            target_block_time=float(c["target_block_time"]) if c.get("target_block_time") else None,
            target_throughput=float(c["target_throughput"]) if c.get("target_throughput") else None,
            max_blocks_analyzed=int(c.get("max_blocks_analyzed", C.MAX_BLOCKS_ANALYZED)),
            expected_chain_id=int(c["expected_chain_id"]) if c.get("expected_chain_id") else None,
            min_theoretical_capacity=float(c["min_theoretical_capacity"]) if c.get("min_theoretical_capacity") else None,
        )


@dataclass
class RatioSpec:
    numerator: str
    denominator: str
    target: float
    tolerance: float = C.RATIO_TOLERANCE


@dataclass
class InvariantConfig:
    receives: list[str] = field(default_factory=list)
    ratios: list[RatioSpec] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: dict) -> "InvariantConfig":
        i = cfg.get("invariants", {})
        return cls(
            receives=list(i.get("receives", [])),
            ratios=[
                RatioSpec(
                    numerator=r["numerator"],
                    denominator=r["denominator"],
                    target=float(r["target"]),
                    tolerance=float(r.get("tolerance", C.RATIO_TOLERANCE)),
                )
                for r in i.get("ratios", [])
            ],
        )

    @property
    def accounts(self) -> list[str]:
        seen: dict[str, None] = dict.fromkeys(self.receives)
        for r in self.ratios:
            seen.setdefault(r.numerator)
            seen.setdefault(r.denominator)
        return list(seen)


@dataclass
class Settings:
    ledger: LedgerConfig
    run: RunConfig
    poller: PollerConfig
    capacity: CapacityConfig
    invariants: InvariantConfig
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_config(cls, cfg: dict) -> "Settings":
        return cls(
            ledger=LedgerConfig.from_config(cfg),
            run=RunConfig.from_config(cfg),
            poller=PollerConfig.from_config(cfg),
            capacity=CapacityConfig.from_config(cfg),
            invariants=InvariantConfig.from_config(cfg),
            raw=cfg,
        )
