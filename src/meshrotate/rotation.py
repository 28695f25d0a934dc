"""
rotation.py — Operator workflows

``prepare``          snapshot, extract root A, generate root B + intermediate
``advance_to``       one forward phase step from the declared current phase
``run_verification`` probe the declared phase and record the result
``rollback``         restore the snapshot
``run_all_phases``   the above, gated by caller-supplied confirmations

A phase other than ``initial`` must have a recorded passing verification
before the next phase is applied. Skipping that is an explicit, logged
operator override.

Confirmation is always a callable handed in by the caller. The CLI prompts on
a terminal; tests pass lambdas.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .backup import load_snapshot, restore_snapshot, reuse_snapshot, take_snapshot
from .cluster import SecretStore, WorkloadOrchestrator
from .config import RotationConfig
from .errors import (
    ConfigurationError,
    InvalidTransitionError,
    SnapshotIntegrityError,
    UnverifiedPhaseError,
    VerificationFailureError,
)
from .executor import AppliedConfig, PhaseTransitionExecutor
from .material import (
    create_intermediate_identity,
    create_root_identity,
    extract_current_root_identity,
    resolve_root_source,
)
from .phases import Phase, RotationMaterial, TransitionPlan, propose_transition
from .probes import ProbeHarness
from .verification import VerificationReport, verify_phase
from .workspace import Workspace

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


def _always(_prompt: str) -> bool:
    return True


@dataclass
class RotationContext:
    config: RotationConfig
    store: SecretStore
    orchestrator: WorkloadOrchestrator
    sleep: Callable[[float], None] = field(default=time.sleep)

    @property
    def workspace(self) -> Workspace:
        return Workspace(self.config.work_dir)

    def executor(self) -> PhaseTransitionExecutor:
        return PhaseTransitionExecutor(
            self.store,
            self.config.istio_namespace,
            settle_seconds=self.config.settle_seconds,
            sleep=self.sleep,
        )


def prepare(ctx: RotationContext) -> RotationMaterial:
    """Back up the live CA secrets and build every artifact the phases need.

    Root A is read before anything is written, so a cluster without a usable
    CA secret leaves no snapshot behind. An existing snapshot is reused when
    the rotation has not started and the live secrets still match it; this is
    how an interrupted ``prepare`` is resumed.

    Raises:
        SnapshotIntegrityError: The workspace snapshot belongs to a rotation
            already past ``initial``, or no longer matches the cluster.
        ConfigurationNotFoundError: No usable CA secret exists in the cluster.
    """
    cfg, ws = ctx.config, ctx.workspace
    root_a = extract_current_root_identity(resolve_root_source(ctx.store, cfg.istio_namespace))

    ws.root.mkdir(parents=True, exist_ok=True)
    if ws.snapshot_path.exists():
        phase = ws.read_phase()
        if phase not in (None, Phase.INITIAL):
            raise SnapshotIntegrityError(
                f"{ws.snapshot_path} belongs to a rotation at {phase.label}; "
                f"run `meshrotate rollback` before preparing again"
            )
        reuse_snapshot(ctx.store, cfg.istio_namespace, ws.snapshot_path)
    else:
        take_snapshot(ctx.store, cfg.istio_namespace, ws.snapshot_path)

    ws.write_root_a(root_a)

    logger.info("Generating new root certificate (Root B)...")
    root_b = create_root_identity("B", cfg.root_validity_days, cfg.key_size)
    logger.info("Generating intermediate CA for Root B...")
    intermediate_b = create_intermediate_identity(root_b, cfg.intermediate_validity_days, cfg.key_size)
    ws.write_root_b(root_b, intermediate_b)
    ws.write_combined_bundles(root_a, root_b)
    ws.write_phase(Phase.INITIAL)

    logger.info("Preparation completed; certificate files are in %s", ws.root)
    return RotationMaterial(root_a=root_a, root_b=root_b, intermediate_b=intermediate_b)


def declared_phase(ws: Workspace, override: Optional[Phase] = None) -> Phase:
    """The caller's phase if given, else the one recorded in the workspace."""
    if override is not None:
        return override
    phase = ws.read_phase()
    if phase is None:
        raise InvalidTransitionError(
            f"no declared phase in {ws.phase_file}; run `meshrotate prepare` or pass --from-phase"
        )
    return phase


def ensure_verified(ctx: RotationContext, current: Phase, skip: bool = False) -> None:
    """Refuse to leave ``current`` unless its verification passed.

    ``initial`` is exempt: the mesh still runs on its original CA.

    Raises:
        UnverifiedPhaseError: No passing verification is recorded for ``current``.
    """
    if current is Phase.INITIAL or ctx.workspace.phase_verified(current):
        return
    if skip:
        logger.warning(
            "OVERRIDE: leaving %s without a recorded passing verification", current.label
        )
        return
    raise UnverifiedPhaseError(
        f"{current.label} has no passing verification; run `meshrotate probes verify {current.label}` "
        f"or pass --skip-verification"
    )


def plan_advance(ctx: RotationContext, target: Phase, current: Optional[Phase] = None) -> TransitionPlan:
    ws = ctx.workspace
    return propose_transition(declared_phase(ws, current), target, ws.load_material())


def advance_to(
    ctx: RotationContext,
    target: Phase,
    current: Optional[Phase] = None,
    confirm: Confirm = _always,
    attested: bool = False,
    skip_verification: bool = False,
) -> Optional[AppliedConfig]:
    """Move one phase forward.

    Returns:
        AppliedConfig, or ``None`` if the operator declined.

    Raises:
        UnverifiedPhaseError: The current phase has not passed verification
            and ``skip_verification`` is not set.
    """
    plan = plan_advance(ctx, target, current)
    ensure_verified(ctx, plan.current, skip_verification)
    for line in plan.describe():
        logger.info(line)
    if not confirm(f"Apply {target.label}?"):
        logger.info("Aborted before applying %s", target.label)
        return None
    applied = ctx.executor().commit_transition(plan, attested=attested)
    ctx.workspace.write_phase(target)
    logger.info("%s completed", target.label)
    return applied


def run_verification(ctx: RotationContext, harness: ProbeHarness, label: str) -> VerificationReport:
    """Run the probe protocol and record the outcome against the declared phase.

    A label that names a phase other than the declared one is still run, but
    its result is not recorded.
    """
    ws = ctx.workspace
    try:
        phase: Optional[Phase] = Phase.parse(label)
    except ValueError:
        phase = None
    if phase is not None and ws.read_phase() is not phase:
        logger.warning("%s is not the declared phase; the result will not be recorded", label)
        phase = None

    try:
        report = verify_phase(
            harness, label, ctx.config.verify_seconds, ctx.config.rollout_timeout, sleep=ctx.sleep
        )
    except VerificationFailureError:
        if phase is not None:
            ws.write_phase(phase, verified=False)
        raise
    if phase is not None:
        ws.write_phase(phase, verified=True)
    return report


def rollback(ctx: RotationContext) -> None:
    """Restore the pre-rotation CA secrets and reset the declared phase."""
    logger.warning("ROLLBACK: Restoring original CA state")
    ws = ctx.workspace
    snapshot = load_snapshot(ws.snapshot_path)
    restore_snapshot(snapshot, ctx.store, ctx.orchestrator, ctx.config.rollout_timeout)
    ws.write_phase(Phase.INITIAL)


def run_all_phases(
    ctx: RotationContext,
    confirm: Confirm,
    attest: Callable[[], bool],
    verify: Optional[Callable[[Phase], VerificationReport]] = None,
    skip_verification: bool = False,
) -> Phase:
    """Prepare, then walk phase1..phase3 asking before each step.

    Args:
        confirm: Asked before the rotation starts and before each later phase.
        attest: Asked before phase3; must confirm all workloads are B-signed.
        verify: Connectivity check run after each applied phase. Required
            unless ``skip_verification`` is set. A failure propagates and
            stops the walk.
        skip_verification: Operator override; phases advance unverified.

    Returns:
        Phase: The last phase applied.

    Raises:
        ConfigurationError: No ``verify`` given and verification not skipped.
        UnverifiedPhaseError: ``verify`` returned a report that did not pass.
    """
    if verify is None and not skip_verification:
        raise ConfigurationError("verification is required after every phase unless explicitly skipped")

    prepare(ctx)
    if not confirm("This will rotate your Istio root CA certificate. Proceed?"):
        logger.info("Aborted")
        return Phase.INITIAL

    ws = ctx.workspace
    current = Phase.INITIAL
    for target in (Phase.PHASE1, Phase.PHASE2, Phase.PHASE3):
        if target is not Phase.PHASE1 and not confirm(f"{current.label} completed. Continue to {target.label}?"):
            logger.info("Stopped at %s", current.label)
            return current
        attested = False
        if target is Phase.PHASE3:
            attested = attest()
            if not attested:
                logger.info("Stopped at %s; workloads not attested as B-signed", current.label)
                return current
        advance_to(ctx, target, current, attested=attested, skip_verification=skip_verification)
        current = target
        if verify is not None:
            report = verify(target)
            if not report.passed:
                raise UnverifiedPhaseError(f"verification of {target.label} did not pass")
            ws.write_phase(target, verified=True)

    logger.info("Certificate rotation completed")
    return current
