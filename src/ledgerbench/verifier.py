"""Balance invariants checked across a run.

Before the run every designated account is read once; a failed read there is
a setup problem. After the run the same accounts are read again and each
check passes or fails on the observed deltas. ``verify`` never raises for a
violated invariant.
"""

import asyncio
import logging
from dataclasses import dataclass

import ledgerbench.constants as C
from ledgerbench.config import InvariantConfig, RatioSpec
from ledgerbench.errors import LedgerError, SetupFailure
from ledgerbench.ledger.base import Ledger
from ledgerbench.models import BalanceSnapshot

log = logging.getLogger("ledgerbench.verifier")


@dataclass(frozen=True)
class ReceivesCheck:
    account: str

    @property
    def name(self) -> str:
        return f"receives:{self.account}"


@dataclass(frozen=True)
class RatioCheck:
    numerator: str
    denominator: str
    target: float
    tolerance: float = C.RATIO_TOLERANCE

    @property
    def name(self) -> str:
        return f"ratio:{self.numerator}/{self.denominator}"

    @classmethod
    def from_spec(cls, spec: RatioSpec) -> "RatioCheck":
        return cls(spec.numerator, spec.denominator, spec.target, spec.tolerance)


@dataclass
class CheckResult:
    name: str
    passed: bool
    reason: str | None = None
    observed: float | None = None
    expected: float | None = None
    deltas: dict[str, int] | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "reason": self.reason,
            "observed": self.observed,
            "expected": self.expected,
            "deltas": self.deltas,
        }


Snapshots = dict[str, BalanceSnapshot]


class InvariantVerifier:
    def __init__(self, ledger: Ledger, checks: list[ReceivesCheck | RatioCheck]) -> None:
        self.ledger = ledger
        self.checks = checks

    @classmethod
    def from_config(cls, ledger: Ledger, cfg: InvariantConfig) -> "InvariantVerifier":
        checks: list[ReceivesCheck | RatioCheck] = [ReceivesCheck(a) for a in cfg.receives]
        checks += [RatioCheck.from_spec(r) for r in cfg.ratios]
        return cls(ledger, checks)

    @property
    def accounts(self) -> list[str]:
        seen: dict[str, None] = {}
        for c in self.checks:
            if isinstance(c, ReceivesCheck):
                seen.setdefault(c.account)
            else:
                seen.setdefault(c.numerator)
                seen.setdefault(c.denominator)
        return list(seen)

    async def _read(self, account: str) -> BalanceSnapshot:
        return BalanceSnapshot(account=account, amount=await self.ledger.get_balance(account))

    async def snapshot_before(self) -> Snapshots:
        if not self.checks:
            return {}
        try:
            snaps = await asyncio.gather(*(self._read(a) for a in self.accounts))
        except LedgerError as e:
            raise SetupFailure(f"cannot read starting balances: {e}") from e
        return {s.account: s for s in snaps}

    async def snapshot_after(self) -> tuple[Snapshots, dict[str, str]]:
        """Ending balances plus the accounts whose read failed, with the error."""
        results = await asyncio.gather(*(self._read(a) for a in self.accounts), return_exceptions=True)
        snaps: Snapshots = {}
        errors: dict[str, str] = {}
        for account, r in zip(self.accounts, results):
            if isinstance(r, LedgerError):
                log.warning("Balance read failed for %s: %s", account, r)
                errors[account] = str(r)
            elif isinstance(r, BaseException):
                raise r
            else:
                snaps[account] = r
        return snaps, errors

    def verify(self, before: Snapshots, after: Snapshots, errors: dict[str, str] | None = None) -> list[CheckResult]:
        errors = errors or {}
        results = []
        for check in self.checks:
            result = self._evaluate(check, before, after, errors)
            level = logging.INFO if result.passed else logging.WARNING
            log.log(level, "%s: %s%s", result.name, "pass" if result.passed else "FAIL",
                    f" ({result.reason})" if result.reason else "")
            results.append(result)
        return results

    @staticmethod
    def _delta(account: str, before: Snapshots, after: Snapshots, errors: dict[str, str]) -> int | str:
        if account in errors:
            return f"balance read failed for {account}: {errors[account]}"
        if account not in before or account not in after:
            return f"no balance snapshot for {account}"
        return after[account].amount - before[account].amount

    def _evaluate(self, check, before: Snapshots, after: Snapshots, errors: dict[str, str]) -> CheckResult:
        if isinstance(check, ReceivesCheck):
            d = self._delta(check.account, before, after, errors)
            if isinstance(d, str):
                return CheckResult(check.name, False, reason=d)
            ok = d > 0
            return CheckResult(
                check.name, ok, reason=None if ok else "no balance increase",
                observed=d, deltas={check.account: d},
            )

        num = self._delta(check.numerator, before, after, errors)
        den = self._delta(check.denominator, before, after, errors)
        for d in (num, den):
            if isinstance(d, str):
                return CheckResult(check.name, False, reason=d, expected=check.target)
        deltas = {check.numerator: num, check.denominator: den}
        if den <= 0:
            return CheckResult(check.name, False, reason="undefined ratio", expected=check.target, deltas=deltas)
        ratio = num / den
        ok = abs(ratio - check.target) <= check.tolerance * abs(check.target)
        return CheckResult(
            check.name, ok,
            reason=None if ok else f"ratio {ratio:.4f} outside {check.target} ±{check.tolerance:.0%}",
            observed=ratio, expected=check.target, deltas=deltas,
        )


def parameter_checks(
    metrics: dict,
    *,
    chain_id: int | None = None,
    expected_chain_id: int | None = None,
    min_capacity: float | None = None,
) -> list[CheckResult]:
    """Verdicts on the chain's configured parameters, from a computed metrics dict.

    Only checks with an expectation configured are emitted. A figure that is
    undefined fails its check.
    """
    results = []
    if expected_chain_id is not None:
        ok = chain_id == expected_chain_id
        results.append(CheckResult(
            "chain_id", ok,
            reason=None if ok else ("chain id unavailable" if chain_id is None else f"chain id {chain_id}"),
            observed=chain_id, expected=expected_chain_id,
        ))

    bt = metrics.get("block_time")
    if bt is not None:
        ok = bt.get("actual") is not None and bt.get("status") != "off_target"
        results.append(CheckResult(
            "block_time", ok,
            reason=None if ok else f"block time {bt.get('status')}",
            observed=bt.get("actual"), expected=bt.get("target"),
        ))

    rl = metrics.get("resource_limit")
    if rl is not None:
        if "matches" in rl:
            results.append(CheckResult(
                "resource_limit", rl["matches"],
                reason=None if rl["matches"] else "resource limit differs",
                observed=rl.get("observed"), expected=rl.get("expected"),
            ))
        if "in_range" in rl:
            lo, hi = rl["range"]
            results.append(CheckResult(
                "resource_limit_range", rl["in_range"],
                reason=None if rl["in_range"] else f"resource limit outside [{lo}, {hi}]",
                observed=rl.get("observed"),
            ))

    if min_capacity is not None:
        cap = metrics.get("theoretical_capacity")
        ok = cap is not None and cap >= min_capacity
        results.append(CheckResult(
            "theoretical_capacity", ok,
            reason=None if ok else f"capacity below {min_capacity:g} tx/s",
            observed=cap, expected=min_capacity,
        ))

    return results
