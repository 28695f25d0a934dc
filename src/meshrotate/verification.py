"""
verification.py — Connectivity Verification Protocol

Certificates are validated per connection, and workloads pick up new ones
only when they restart or renew. After a trust change every pairing of
certificate generations has to be exercised:

  1. old client  -> old server   observe without restarting anything
  2. new client  -> old server   restart the client only
  3. new client  -> new server   restart the server as well

Each step truncates the probe log, observes for the window, and requires at
least one request and zero failures. The first failing step ends the run; later
steps are never attempted.
"""

from __future__ import annotations
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .errors import ConfigurationError, VerificationFailureError
from .probes import CLIENT, PROBE_INTERVAL_SECONDS, SERVER, ProbeHarness, ProbeRecord

logger = logging.getLogger(__name__)

# Below this the reset/read race can hide or invent a window's only entries.
MIN_WINDOW_SECONDS = 3 * PROBE_INTERVAL_SECONDS


class Step(enum.Enum):
    OLD_OLD = "old-client/old-server"
    NEW_OLD = "new-client/old-server"
    NEW_NEW = "new-client/new-server"


@dataclass(frozen=True)
class StepResult:
    step: Step
    requests: int
    failures: Tuple[ProbeRecord, ...]

    @property
    def passed(self) -> bool:
        return self.requests > 0 and not self.failures


@dataclass(frozen=True)
class VerificationReport:
    label: str
    steps: Tuple[StepResult, ...]

    @property
    def passed(self) -> bool:
        return len(self.steps) == len(Step) and all(s.passed for s in self.steps)

    def summary(self) -> List[str]:
        return [f"{s.step.value}: {s.requests} requests, {len(s.failures)} failures" for s in self.steps]


def _observe(harness: ProbeHarness, step: Step, window: int, sleep: Callable[[float], None]) -> StepResult:
    logger.info("[%s] resetting probe log and observing for %ds", step.value, window)
    harness.reset_log()
    sleep(window)
    records = harness.read_log()
    failures = tuple(r for r in records if not r.ok)
    result = StepResult(step=step, requests=len(records), failures=failures)
    logger.info("[%s] %d requests, %d failures", step.value, result.requests, len(failures))
    return result


def _check(label: str, result: StepResult) -> None:
    if result.passed:
        return
    if result.requests == 0:
        detail = [f"no probe requests recorded during the {result.step.value} window"]
    else:
        detail = [r.to_line() for r in result.failures]
    for line in detail:
        logger.error("[%s] %s", result.step.value, line)
    raise VerificationFailureError(label, result.step.value, detail)


def verify_phase(
    harness: ProbeHarness,
    label: str,
    settle_seconds: int,
    rollout_timeout: int = 300,
    sleep: Optional[Callable[[float], None]] = None,
) -> VerificationReport:
    """Run the three-step probe protocol against the live mesh.

    Args:
        harness: Probe pair to drive.
        label: Phase label for reporting (e.g. ``"phase2"``).
        settle_seconds: Observation window per step.
        rollout_timeout: Upper bound for each restart's readiness wait.
        sleep: Injected for tests; defaults to ``time.sleep``.

    Returns:
        VerificationReport: All three steps, every one passed.

    Raises:
        ConfigurationError: Window shorter than three probe intervals.
        VerificationFailureError: A step saw failures or no traffic.
        PropagationTimeoutError: A restarted probe did not become ready.
    """
    if settle_seconds < MIN_WINDOW_SECONDS:
        raise ConfigurationError(
            f"verification window {settle_seconds}s is shorter than {MIN_WINDOW_SECONDS}s"
        )
    sleep = sleep or time.sleep
    results: List[StepResult] = []

    results.append(_observe(harness, Step.OLD_OLD, settle_seconds, sleep))
    _check(label, results[-1])

    logger.info("Restarting probe client")
    harness.restart(CLIENT)
    harness.wait_ready(CLIENT, rollout_timeout)
    results.append(_observe(harness, Step.NEW_OLD, settle_seconds, sleep))
    _check(label, results[-1])

    logger.info("Restarting probe server")
    harness.restart(SERVER)
    harness.wait_ready(SERVER, rollout_timeout)
    results.append(_observe(harness, Step.NEW_NEW, settle_seconds, sleep))
    _check(label, results[-1])

    logger.info("Verification for %s passed", label)
    return VerificationReport(label=label, steps=tuple(results))
