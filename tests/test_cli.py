import sys
import unittest.mock as mock

import pytest

from datetime import datetime, timedelta, timezone

from conftest import NAMESPACE, FakeOrchestrator, FakeProbeHarness, make_context
from meshrotate.cli import main
from meshrotate.errors import InvalidTransitionError, VerificationFailureError
from meshrotate.material import PLUGGED_IN_SECRET
from meshrotate.phases import Phase
from meshrotate.probes import ProbeRecord
from meshrotate.rotation import prepare


def test_cli_main_help(capsys):
    with mock.patch.object(sys, "argv", ["meshrotate", "--help"]):
        with pytest.raises(SystemExit) as e:
            main()
        assert e.value.code == 0
        captured = capsys.readouterr()
        assert "Istio root CA rotation" in captured.out


def test_cli_main_advance_call():
    with mock.patch.object(sys, "argv", ["meshrotate", "advance", "phase2", "--from-phase", "phase1",
                                         "--settle-seconds", "5", "-v"]):
        with mock.patch("meshrotate.cli.cmd_advance") as mock_advance:
            main()
            assert mock_advance.called
            args = mock_advance.call_args[0][0]
            assert args.phase == "phase2"
            assert args.from_phase == "phase1"
            assert args.settle_seconds == 5
            assert args.verbose is True


def test_cli_main_probes_verify_call():
    with mock.patch("meshrotate.cli.cmd_probes") as mock_probes:
        main(["probes", "verify", "phase1"])
        args = mock_probes.call_args[0][0]
        assert args.probes_command == "verify"
        assert args.label == "phase1"


def test_rotation_error_printed(capsys):
    with mock.patch("meshrotate.cli.cmd_advance", side_effect=InvalidTransitionError("phase1 -> phase3")):
        with pytest.raises(SystemExit) as e:
            main(["advance", "phase3"])
    assert e.value.code == 1
    out = capsys.readouterr().out
    assert "ERROR: MESHROT_E101." in out
    assert "Context: phase1 -> phase3." in out
    assert "(See: https://meshrotate.readthedocs.io/errors/MESHROT_E101)" in out


def test_verification_failure_lists_failed_requests(capsys):
    err = VerificationFailureError("phase2", "new-client/old-server", ["2026-10-18T09:00:06Z FAIL 000"])
    with mock.patch("meshrotate.cli.cmd_probes", side_effect=err):
        with pytest.raises(SystemExit) as e:
            main(["probes", "verify", "phase2"])
    assert e.value.code == 1
    out = capsys.readouterr().out
    assert "FAIL: phase2 at step new-client/old-server:" in out
    assert "  2026-10-18T09:00:06Z FAIL 000" in out
    assert "MESHROT_E200" in out


def test_interrupt_exits_130(capsys):
    with mock.patch("meshrotate.cli.cmd_rollback", side_effect=KeyboardInterrupt):
        with pytest.raises(SystemExit) as e:
            main(["rollback"])
    assert e.value.code == 130
    assert "meshrotate inspect" in capsys.readouterr().out


def test_unknown_phase_name(config, self_signed_store):
    ctx = make_context(config, self_signed_store)
    with mock.patch("meshrotate.cli._context", return_value=ctx):
        with pytest.raises(SystemExit) as e:
            main(["advance", "phase9"])
    assert e.value.code == 2


class TestCommandsAgainstFakes:
    @pytest.fixture
    def ctx(self, config, self_signed_store):
        return make_context(config, self_signed_store, FakeOrchestrator())

    def test_prepare_continues_past_warnings_with_yes(self, ctx, capsys):
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("meshrotate.cli.check_prerequisites"):
            main(["prepare", "--yes"])
        assert "SUCCESS: Preparation completed." in capsys.readouterr().out
        assert ctx.workspace.is_prepared()

    def test_prepare_aborts_on_warnings(self, ctx, capsys):
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("meshrotate.cli.check_prerequisites"), \
                mock.patch("builtins.input", return_value="n"):
            with pytest.raises(SystemExit) as e:
                main(["prepare"])
        assert e.value.code == 1
        assert not ctx.workspace.snapshot_path.exists()

    def test_advance_dry_run(self, ctx, capsys):
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx):
            main(["advance", "phase1", "--dry-run"])
        out = capsys.readouterr().out
        assert "initial -> phase1: Add Root B to trust store" in out
        assert ctx.store.mutations == []

    def test_advance_applies(self, ctx, capsys):
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx):
            main(["advance", "phase1", "--yes"])
        out = capsys.readouterr().out
        assert "SUCCESS: phase1 applied" in out
        assert "trust bundle is {A, B}" in out
        assert ctx.workspace.read_phase() is Phase.PHASE1

    def test_phase3_refused_without_attestation(self, ctx, capsys):
        prepare(ctx)
        ctx.workspace.write_phase(Phase.PHASE2, verified=True)
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("builtins.input", return_value="no"):
            with pytest.raises(SystemExit) as e:
                main(["advance", "phase3", "--yes"])
        assert e.value.code == 1
        assert "MESHROT_E101" in capsys.readouterr().out
        assert ctx.store.mutations == []

    def test_inspect(self, ctx, capsys):
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx):
            main(["advance", "phase1", "--yes"])
            capsys.readouterr()
            main(["inspect"])
        out = capsys.readouterr().out
        assert f"CA secret: {PLUGGED_IN_SECRET} (plugged-in CA)" in out
        assert "Inferred phase: phase1" in out
        assert "Declared phase: phase1" in out

    def test_rollback(self, ctx, capsys):
        original = ctx.store.state()
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx):
            main(["advance", "phase1", "--yes"])
            main(["rollback", "--yes"])
        assert "SUCCESS: Rollback completed." in capsys.readouterr().out
        assert ctx.store.state() == original
        assert (NAMESPACE, PLUGGED_IN_SECRET) not in ctx.store.secrets

    def test_advance_refuses_unverified_phase(self, ctx, capsys):
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx):
            main(["advance", "phase1", "--yes"])
            mutations = list(ctx.store.mutations)
            with pytest.raises(SystemExit) as e:
                main(["advance", "phase2", "--yes"])
        assert e.value.code == 1
        assert "ERROR: MESHROT_E202." in capsys.readouterr().out
        assert ctx.store.mutations == mutations
        assert ctx.workspace.read_phase() is Phase.PHASE1

    def test_advance_with_skip_verification_shows_istiod_log(self, ctx, capsys):
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("meshrotate.cli.control_plane_cert_log",
                           return_value=["info ca Loaded plugged-in CA certificates"]) as log:
            main(["advance", "phase1", "--yes"])
            main(["advance", "phase2", "--yes", "--skip-verification"])
        out = capsys.readouterr().out
        assert "SUCCESS: phase2 applied" in out
        assert "  info ca Loaded plugged-in CA certificates" in out
        assert log.call_count == 1
        assert log.call_args[0][1] == NAMESPACE

    def test_probes_verify_unlocks_advance(self, ctx, capsys):
        t0 = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)
        window = [ProbeRecord(t0 + timedelta(seconds=i), True, "200") for i in range(4)]
        prepare(ctx)
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("meshrotate.cli._harness", return_value=FakeProbeHarness([window] * 3)), \
                mock.patch("meshrotate.cli.control_plane_cert_log", return_value=[]):
            main(["advance", "phase1", "--yes"])
            main(["probes", "verify", "phase1"])
            assert ctx.workspace.phase_verified(Phase.PHASE1)
            main(["advance", "phase2", "--yes"])
        out = capsys.readouterr().out
        assert "PASS: phase1 verified" in out
        assert "SUCCESS: phase2 applied" in out
        assert "  (none)" in out

    def test_inspect_traffic(self, ctx, capsys):
        sample = 'istio_requests_total{response_code="200",source_app="web"} 42'
        with mock.patch("meshrotate.cli._context", return_value=ctx), \
                mock.patch("meshrotate.cli.sample_traffic_metrics", return_value={"web-1": [sample]}) as metrics:
            main(["inspect", "--traffic", "2"])
        assert metrics.call_args.kwargs["limit"] == 2
        out = capsys.readouterr().out
        assert "Request metrics in default:" in out
        assert f"    {sample}" in out


def test_all_verifies_unless_skipped():
    with mock.patch("meshrotate.cli.cmd_all") as mock_all:
        main(["all"])
        assert mock_all.call_args[0][0].skip_verification is False
        main(["all", "--skip-verification"])
        assert mock_all.call_args[0][0].skip_verification is True
