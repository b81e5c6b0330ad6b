"""The per-run result record and the places it can be written."""

import json
import logging
import math
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import IO, Any, Protocol

import ledgerbench.constants as C
from ledgerbench.verifier import parameter_checks

log = logging.getLogger("ledgerbench.report")


def _render(value: Any) -> Any:
    """``None`` becomes ``"undefined"``; non-finite floats likewise."""
    if value is None:
        return C.UNDEFINED
    if isinstance(value, float) and not math.isfinite(value):
        return C.UNDEFINED
    if isinstance(value, dict):
        return {str(k): _render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(v) for v in value]
    return value


@dataclass
class RunReport:
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    strategy: str = ""
    backend: str = ""
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    window: dict = field(default_factory=dict)
    send: dict = field(default_factory=dict)
    submissions: dict = field(default_factory=dict)
    inclusion: dict = field(default_factory=dict)
    metrics: dict = field(default_factory=dict)
    invariants: list[dict] = field(default_factory=list)
    sequences: dict = field(default_factory=dict)
    parameters: list[dict] | None = None
    error: str | None = None

    @property
    def invariants_passed(self) -> bool:
        return all(c.get("passed") for c in self.invariants)

    @property
    def parameter_verdicts(self) -> list[dict]:
        """Parameter checks as recorded by the run, or derived from the metrics when none were."""
        if self.parameters is not None:
            return self.parameters
        return [c.to_dict() for c in parameter_checks(self.metrics)]

    @property
    def parameters_passed(self) -> bool:
        return all(c.get("passed") for c in self.parameter_verdicts)

    @property
    def ok(self) -> bool:
        return self.error is None and self.invariants_passed and self.parameters_passed

    def to_dict(self) -> dict:
        d = {
            "run_id": self.run_id,
            "strategy": self.strategy,
            "backend": self.backend,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "window": self.window,
            "send": self.send,
            "submissions": self.submissions,
            "inclusion": self.inclusion,
            "metrics": self.metrics,
            "invariants": self.invariants,
            "invariants_passed": self.invariants_passed,
            "parameters": self.parameter_verdicts,
            "parameters_passed": self.parameters_passed,
            "sequences": self.sequences,
            "ok": self.ok,
        }
        if self.error is not None:
            d["error"] = self.error
        return _render(d)


class ResultSink(Protocol):
    def write(self, report: RunReport) -> None: ...


class JsonLinesSink:
    """One JSON object per line. Defaults to stdout."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self.stream = stream or sys.stdout

    def write(self, report: RunReport) -> None:
        self.stream.write(json.dumps(report.to_dict(), sort_keys=False) + "\n")
        self.stream.flush()


class LogSink:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.log = logger or log

    def write(self, report: RunReport) -> None:
        m = report.to_dict()["metrics"]
        self.log.info(
            "Run %s [%s]: sent=%s accepted=%s included=%s send_rate=%s inclusion_rate=%s utilization=%s invariants=%s parameters=%s",
            report.run_id, report.strategy,
            m.get("sent"), m.get("accepted"), m.get("included"),
            m.get("send_rate"), m.get("inclusion_rate"), m.get("utilization"),
            "pass" if report.invariants_passed else "FAIL",
            "pass" if report.parameters_passed else "FAIL",
        )


class MemorySink:
    """Keeps reports in a list. Used by the control API."""

    def __init__(self) -> None:
        self.reports: list[RunReport] = []

    def write(self, report: RunReport) -> None:
        self.reports.append(report)
