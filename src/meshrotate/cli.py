#!/usr/bin/env python3
"""
cli.py — meshrotate command line

Commands:
  prepare   Check prerequisites, back up CA secrets, generate root B
  advance   Apply the next phase (phase1, phase2, phase3)
  inspect   Show the live CA state (read-only)
  rollback  Restore the pre-rotation CA secrets
  all       Run prepare and every phase interactively
  probes    Manage the connectivity probe workloads (start, status, reset, verify, stop)

Every setting can come from the environment (WORK_DIR, ISTIO_NAMESPACE,
CERT_VALIDITY_DAYS, ...) and be overridden by the matching flag.
"""

from __future__ import annotations
import argparse
import logging
import sys
from typing import Optional

from .cluster import CommandRunner, KubectlOrchestrator, KubectlSecretStore
from .config import RotationConfig
from .errors import RotationError, VerificationFailureError
from .inspection import (
    control_plane_cert_log,
    inspect_current_state,
    sample_traffic_metrics,
    sample_workload_roots,
)
from .phases import Phase
from .preflight import check_mesh_config, check_prerequisites
from .probes import KubernetesProbeHarness
from .rotation import (
    RotationContext,
    advance_to,
    ensure_verified,
    plan_advance,
    prepare,
    rollback,
    run_all_phases,
    run_verification,
)
from .verification import VerificationReport, verify_phase


def _fail_with_error(err: RotationError) -> None:
    """Print a structured error message from a ``RotationError`` and exit.

    Args:
        err: Structured rotation error.

    Returns:
        None: This function terminates the process.
    """
    context = f" Context: {err.context}." if err.context else ""
    print(
        f"ERROR: {err.code}. {err.message}{context} "
        f"Fix: inspect the cluster with `meshrotate inspect` before retrying or rolling back. "
        f"(See: {err.doc_url})"
    )
    sys.exit(1)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(asctime)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _confirm(prompt: str, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    answer = input(f"{prompt} (yes/no): ").strip().lower()
    return answer in ("y", "yes")


def _config(args: argparse.Namespace) -> RotationConfig:
    return RotationConfig.from_env().with_overrides(
        work_dir=args.work_dir,
        istio_namespace=args.istio_namespace,
        probe_namespace=args.probe_namespace,
        workload_namespace=args.workload_namespace,
        root_validity_days=args.root_validity_days,
        intermediate_validity_days=args.intermediate_validity_days,
        settle_seconds=args.settle_seconds,
        verify_seconds=args.verify_seconds,
        rollout_timeout=args.rollout_timeout,
        key_size=args.key_size,
    )


def _context(args: argparse.Namespace) -> RotationContext:
    runner = CommandRunner()
    return RotationContext(
        config=_config(args),
        store=KubectlSecretStore(runner),
        orchestrator=KubectlOrchestrator(runner),
    )


def _harness(ctx: RotationContext) -> KubernetesProbeHarness:
    return KubernetesProbeHarness(ctx.orchestrator, ctx.config.probe_namespace, ctx.config.rollout_timeout)


def _print_report(report: VerificationReport) -> None:
    for line in report.summary():
        print(f"  {line}")
    print(f"PASS: {report.label} verified across all certificate-age pairings.")


def _print_control_plane_log(ctx: RotationContext) -> None:
    lines = control_plane_cert_log(CommandRunner(), ctx.config.istio_namespace)
    print("Recent istiod certificate log lines:")
    for line in lines or ["(none)"]:
        print(f"  {line}")


def cmd_prepare(args: argparse.Namespace) -> None:
    """Handle ``meshrotate prepare``.

    Args:
        args: Parsed CLI arguments.
    """
    ctx = _context(args)
    check_prerequisites()
    mesh = check_mesh_config(ctx.orchestrator, ctx.store, ctx.config.istio_namespace)
    if not mesh.ok and not _confirm("Do you want to continue anyway?", args.yes):
        print("Aborted.")
        sys.exit(1)

    prepare(ctx)
    ws = ctx.workspace
    print("\nSUCCESS: Preparation completed.")
    print(f"Certificate files are in: {ws.root}")
    print(f"Backup is in: {ws.backup_dir}")
    print("Next steps:")
    print("  1. Review the generated certificates")
    print("  2. Run `meshrotate advance phase1` to start the rotation")


def cmd_advance(args: argparse.Namespace) -> None:
    """Handle ``meshrotate advance <phase>``."""
    ctx = _context(args)
    target = Phase.parse(args.phase)
    current = Phase.parse(args.from_phase) if args.from_phase else None

    plan = plan_advance(ctx, target, current)
    print("\n".join(plan.describe()))
    if args.dry_run:
        return
    if not args.skip_verification:
        ensure_verified(ctx, plan.current)

    attested = args.attest_b_signed
    if plan.risky and not attested:
        attested = _confirm("Have all workloads received certificates signed by Root B?")

    applied = advance_to(
        ctx,
        target,
        current,
        confirm=lambda prompt: _confirm(prompt, args.yes),
        attested=attested,
        skip_verification=args.skip_verification,
    )
    if applied is None:
        print("Aborted.")
        return
    print(f"\nSUCCESS: {target.label} applied at {applied.applied_at_utc}; "
          f"trust bundle is {{{', '.join(applied.anchor_ids())}}}.")
    if target is Phase.PHASE2:
        _print_control_plane_log(ctx)

    if args.verify:
        _print_report(run_verification(ctx, _harness(ctx), target.label))
    elif target is not Phase.PHASE3:
        print("Monitor workloads for TLS errors and run `meshrotate probes verify "
              f"{target.label}` before advancing.")


def cmd_inspect(args: argparse.Namespace) -> None:
    """Handle ``meshrotate inspect``. Never writes to the cluster."""
    ctx = _context(args)
    state = inspect_current_state(
        ctx.store, ctx.config.istio_namespace, ctx.workspace, ctx.config.workload_namespace
    )
    print("\n".join(state.lines()))
    if args.workloads:
        roots = ctx.workspace.load_known_roots()
        signed = sample_workload_roots(
            ctx.orchestrator, CommandRunner(), ctx.config.workload_namespace, roots, limit=args.workloads
        )
        print(f"Workload certificates in {ctx.config.workload_namespace}:")
        for pod, root in signed.items():
            print(f"  {pod}: root {root or 'unknown'}")
    if args.traffic:
        metrics = sample_traffic_metrics(
            ctx.orchestrator, CommandRunner(), ctx.config.workload_namespace, limit=args.traffic
        )
        print(f"Request metrics in {ctx.config.workload_namespace}:")
        for pod, samples in metrics.items():
            print(f"  {pod}:")
            for line in samples or ["no istio_requests_total samples"]:
                print(f"    {line}")


def cmd_rollback(args: argparse.Namespace) -> None:
    """Handle ``meshrotate rollback``."""
    ctx = _context(args)
    if not _confirm("Restore the pre-rotation CA secrets and restart istiod?", args.yes):
        print("Aborted.")
        return
    rollback(ctx)
    print("\nSUCCESS: Rollback completed.")


def cmd_all(args: argparse.Namespace) -> None:
    """Handle ``meshrotate all``."""
    ctx = _context(args)
    check_prerequisites()
    mesh = check_mesh_config(ctx.orchestrator, ctx.store, ctx.config.istio_namespace)
    if not mesh.ok and not _confirm("Do you want to continue anyway?"):
        print("Aborted.")
        sys.exit(1)

    verify = None
    if not args.skip_verification:
        harness = _harness(ctx)

        def verify(phase: Phase) -> VerificationReport:
            if phase is Phase.PHASE2:
                _print_control_plane_log(ctx)
            report = verify_phase(harness, phase.label, ctx.config.verify_seconds, ctx.config.rollout_timeout)
            _print_report(report)
            return report

    final = run_all_phases(
        ctx,
        confirm=_confirm,
        attest=lambda: _confirm("Have all workloads received certificates signed by Root B?"),
        verify=verify,
        skip_verification=args.skip_verification,
    )
    print(f"\nStopped at {final.label}." if final is not Phase.PHASE3 else "\nSUCCESS: Certificate rotation completed.")


def cmd_probes(args: argparse.Namespace) -> None:
    """Handle ``meshrotate probes <action>``."""
    ctx = _context(args)
    harness = _harness(ctx)
    if args.probes_command == "start":
        harness.start()
        print(f"Probe workloads running in {ctx.config.probe_namespace}.")
    elif args.probes_command == "status":
        status = harness.status(tail=args.tail)
        print(f"Pods: {', '.join(status.pods) or 'none'}")
        print(f"Requests logged: {status.total}, failures: {status.failures}")
        for record in status.recent:
            print(f"  {record.to_line()}")
    elif args.probes_command == "reset":
        harness.reset_log()
        print("Probe log reset.")
    elif args.probes_command == "verify":
        _print_report(run_verification(ctx, harness, args.label))
    elif args.probes_command == "stop":
        harness.stop()
        print("Probe workloads removed.")


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--work-dir", help="Workspace directory (env WORK_DIR)")
    common.add_argument("--istio-namespace", help="Control-plane namespace (env ISTIO_NAMESPACE)")
    common.add_argument("--probe-namespace", help="Namespace for probe workloads (env PROBE_NAMESPACE)")
    common.add_argument("--workload-namespace", help="Namespace to sample workloads from (env WORKLOAD_NAMESPACE)")
    common.add_argument("--root-validity-days", type=int, help="Root CA validity (env CERT_VALIDITY_DAYS)")
    common.add_argument("--intermediate-validity-days", type=int,
                        help="Intermediate CA validity (env INTERMEDIATE_VALIDITY_DAYS)")
    common.add_argument("--settle-seconds", type=int, help="Propagation wait after a change (env SETTLE_SECONDS)")
    common.add_argument("--verify-seconds", type=int, help="Observation window per probe step (env VERIFY_SECONDS)")
    common.add_argument("--rollout-timeout", type=int, help="Readiness wait bound (env ROLLOUT_TIMEOUT_SECONDS)")
    common.add_argument("--key-size", type=int, help="RSA key size for new CAs (env KEY_SIZE)")
    common.add_argument("-v", "--verbose", action="store_true")
    return common


def main(argv: Optional[list] = None) -> None:
    """CLI entrypoint.

    Parses command-line arguments, routes to a subcommand handler, and turns
    ``RotationError`` into a one-line operator message with exit status 1.
    """
    parser = argparse.ArgumentParser(prog="meshrotate", description="Istio root CA rotation")
    sub = parser.add_subparsers(dest="command", required=True)
    common = _common_options()

    # prepare
    p_prep = sub.add_parser("prepare", parents=[common], help="Back up CA secrets and generate root B")
    p_prep.add_argument("-y", "--yes", action="store_true", help="Do not prompt on mesh config warnings")

    # advance
    p_adv = sub.add_parser("advance", parents=[common], help="Apply the next rotation phase")
    p_adv.add_argument("phase", help="Target phase: phase1, phase2 or phase3")
    p_adv.add_argument("--from-phase", help="Declared current phase (default: read from workspace)")
    p_adv.add_argument("--attest-b-signed", action="store_true",
                       help="Attest all workload certificates are signed by root B (phase3)")
    p_adv.add_argument("--dry-run", action="store_true", help="Show the plan without applying it")
    p_adv.add_argument("--verify", action="store_true", help="Run probe verification after applying")
    p_adv.add_argument("--skip-verification", action="store_true",
                       help="Override: advance even though the current phase has not passed verification")
    p_adv.add_argument("-y", "--yes", action="store_true", help="Do not prompt before applying")

    # inspect
    p_ins = sub.add_parser("inspect", parents=[common], help="Show current CA state (read-only)")
    p_ins.add_argument("--workloads", type=int, default=0, metavar="N",
                       help="Also report the signing root of up to N workload certificates")
    p_ins.add_argument("--traffic", type=int, default=0, metavar="N",
                       help="Also show istio_requests_total samples from up to N workloads")

    # rollback
    p_rb = sub.add_parser("rollback", parents=[common], help="Restore the pre-rotation CA state")
    p_rb.add_argument("-y", "--yes", action="store_true")

    # all
    p_all = sub.add_parser("all", parents=[common], help="Execute all phases interactively")
    p_all.add_argument("--skip-verification", action="store_true",
                       help="Override: do not run probe verification after each phase")

    # probes
    p_pr = sub.add_parser("probes", help="Connectivity probe workloads")
    pr_sub = p_pr.add_subparsers(dest="probes_command", required=True)
    pr_sub.add_parser("start", parents=[common], help="Deploy probe client and server")
    p_pr_status = pr_sub.add_parser("status", parents=[common], help="Show probe pods and recent results")
    p_pr_status.add_argument("--tail", type=int, default=10)
    pr_sub.add_parser("reset", parents=[common], help="Truncate the probe log")
    p_pr_verify = pr_sub.add_parser("verify", parents=[common], help="Run the three-step verification")
    p_pr_verify.add_argument("label", help="Phase label for the report")
    pr_sub.add_parser("stop", parents=[common], help="Remove probe workloads")

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.command == "prepare": cmd_prepare(args)
        elif args.command == "advance": cmd_advance(args)
        elif args.command == "inspect": cmd_inspect(args)
        elif args.command == "rollback": cmd_rollback(args)
        elif args.command == "all": cmd_all(args)
        elif args.command == "probes": cmd_probes(args)
    except VerificationFailureError as err:
        print(f"FAIL: {err.label} at step {err.step}:")
        for line in err.failures:
            print(f"  {line}")
        _fail_with_error(err)
    except RotationError as err:
        _fail_with_error(err)
    except ValueError as err:
        print(f"ERROR: {err}")
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted. The cluster is left as the last completed step produced; "
              "run `meshrotate inspect` before resuming.")
        sys.exit(130)


if __name__ == "__main__":
    main()
