import unittest
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProbeHarness, no_sleep
from meshrotate.errors import ConfigurationError, VerificationFailureError
from meshrotate.probes import CLIENT, SERVER, ProbeRecord
from meshrotate.verification import MIN_WINDOW_SECONDS, Step, verify_phase

T0 = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)


def ok(n=5):
    return [ProbeRecord(T0 + timedelta(seconds=i), True, "200") for i in range(n)]


def failing():
    return ok(2) + [ProbeRecord(T0 + timedelta(seconds=3), False, "000", "curl: (56) Recv failure")]


class TestVerifyPhase(unittest.TestCase):
    def test_all_steps_pass(self):
        harness = FakeProbeHarness([ok(), ok(), ok()])
        report = verify_phase(harness, "phase1", 5, sleep=no_sleep)
        self.assertTrue(report.passed)
        self.assertEqual([s.step for s in report.steps], [Step.OLD_OLD, Step.NEW_OLD, Step.NEW_NEW])
        self.assertEqual(harness.restarted(), [CLIENT, SERVER])
        self.assertEqual(report.summary()[0], "old-client/old-server: 5 requests, 0 failures")

    def test_client_restarted_before_server(self):
        harness = FakeProbeHarness([ok(), ok(), ok()])
        verify_phase(harness, "phase2", 5, sleep=no_sleep)
        self.assertEqual(harness.calls, [
            ("reset",), ("read",),
            ("restart", CLIENT), ("wait_ready", CLIENT),
            ("reset",), ("read",),
            ("restart", SERVER), ("wait_ready", SERVER),
            ("reset",), ("read",),
        ])

    def test_first_step_failure_restarts_nothing(self):
        harness = FakeProbeHarness([failing(), ok(), ok()])
        with self.assertRaises(VerificationFailureError) as ctx:
            verify_phase(harness, "phase1", 5, sleep=no_sleep)
        self.assertEqual(ctx.exception.step, Step.OLD_OLD.value)
        self.assertEqual(harness.restarted(), [])
        self.assertIn("curl: (56) Recv failure", ctx.exception.failures[0])

    def test_second_step_failure_never_restarts_server(self):
        harness = FakeProbeHarness([ok(), failing(), ok()])
        with self.assertRaises(VerificationFailureError) as ctx:
            verify_phase(harness, "phase2", 5, sleep=no_sleep)
        self.assertEqual(ctx.exception.label, "phase2")
        self.assertEqual(ctx.exception.step, Step.NEW_OLD.value)
        self.assertEqual(harness.restarted(), [CLIENT])
        self.assertEqual(len(harness.windows), 1)

    def test_silent_window_is_a_failure(self):
        harness = FakeProbeHarness([ok(), ok(), []])
        with self.assertRaises(VerificationFailureError) as ctx:
            verify_phase(harness, "phase3", 5, sleep=no_sleep)
        self.assertEqual(ctx.exception.step, Step.NEW_NEW.value)
        self.assertIn("no probe requests", ctx.exception.failures[0])


def test_window_too_short():
    harness = FakeProbeHarness([])
    with pytest.raises(ConfigurationError):
        verify_phase(harness, "phase1", MIN_WINDOW_SECONDS - 1, sleep=no_sleep)
    assert harness.calls == []


def test_window_is_slept_per_step():
    slept = []
    verify_phase(FakeProbeHarness([ok(), ok(), ok()]), "phase1", 7, sleep=slept.append)
    assert slept == [7, 7, 7]
