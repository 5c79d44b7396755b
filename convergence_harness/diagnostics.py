#!/usr/bin/env python3
"""
Diagnostics for harness runs

Logging setup, scenario step markers, and the run report that keeps
"the system under test is broken" apart from "the environment is broken".
"""

import json
import logging
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import TeardownError, is_system_under_test_failure

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

EXIT_OK = 0
EXIT_SYSTEM_UNDER_TEST = 1
EXIT_ENVIRONMENT = 2


def configure_logging(level: int = logging.INFO, stream=None):
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(stream or sys.stdout)],
    )


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"convergence_harness.{component}")


def step(log: logging.Logger, message: str, **context: Any):
    """Mark a scenario step."""
    if context:
        log.info("STEP: %s %s", message, json.dumps(context, sort_keys=True, default=str))
    else:
        log.info("STEP: %s", message)


@dataclass
class ScenarioResult:
    name: str
    passed: bool
    error: Optional[BaseException] = None
    teardown_errors: List[TeardownError] = field(default_factory=list)
    duration_s: float = 0.0
    skipped: bool = False

    @property
    def failure_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        if is_system_under_test_failure(self.error):
            return "system-under-test"
        return "environment"


class RunReport:
    """Collects scenario results for the final summary."""

    def __init__(self):
        self.start_time = datetime.now()
        self.results: List[ScenarioResult] = []

    def add(self, result: ScenarioResult):
        self.results.append(result)

    @property
    def passed(self) -> bool:
        return all(r.passed and not r.teardown_errors for r in self.results)

    def exit_code(self) -> int:
        if any(r.failure_kind == "system-under-test" for r in self.results):
            return EXIT_SYSTEM_UNDER_TEST
        if any(r.error is not None or r.teardown_errors for r in self.results):
            return EXIT_ENVIRONMENT
        return EXIT_OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": datetime.now().isoformat(),
            "scenarios": [
                {
                    "name": r.name,
                    "passed": r.passed,
                    "skipped": r.skipped,
                    "failure_kind": r.failure_kind,
                    "error": str(r.error) if r.error else None,
                    "teardown_errors": [str(e) for e in r.teardown_errors],
                    "duration_s": round(r.duration_s, 3),
                }
                for r in self.results
            ],
        }

    def render(self) -> str:
        lines = ["=" * 60, "HARNESS RUN REPORT", "=" * 60]
        for r in self.results:
            if r.skipped:
                lines.append(f"  - {r.name} (skipped: {r.error})")
                continue
            mark = "✓" if r.passed else "✗"
            lines.append(f"  {mark} {r.name} ({r.duration_s:.1f}s)")
            if r.error is not None:
                lines.append(f"      {r.failure_kind} failure: {r.error}")
            for e in r.teardown_errors:
                lines.append(f"      teardown: {e}")
        failed = sum(1 for r in self.results if not r.passed and not r.skipped)
        skipped = sum(1 for r in self.results if r.skipped)
        teardown = sum(len(r.teardown_errors) for r in self.results)
        lines.append("-" * 60)
        lines.append(
            f"Scenarios: {len(self.results)}  Failed: {failed}  Skipped: {skipped}  Teardown errors: {teardown}"
        )
        return "\n".join(lines)


class Stopwatch:
    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._start = clock()

    def elapsed(self) -> float:
        return self._clock() - self._start
