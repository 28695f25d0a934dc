"""meshrotate public API.

Zero-downtime rotation of an Istio mesh's root CA. The rotation walks four
phases, each a single delete-and-recreate of the ``cacerts`` secret, with a
pre-rotation snapshot that ``rollback`` restores.

Example:
    from meshrotate import RotationConfig, RotationContext, Phase, advance_to
    from meshrotate.cluster import KubectlOrchestrator, KubectlSecretStore

    ctx = RotationContext(RotationConfig.from_env(), KubectlSecretStore(), KubectlOrchestrator())
    advance_to(ctx, Phase.PHASE1)
"""

from .config import RotationConfig
from .errors import RotationError
from .executor import AppliedConfig, PhaseTransitionExecutor
from .material import (
    RootIdentity,
    IntermediateIdentity,
    TrustBundle,
    build_trust_bundle,
    chain_validates,
    create_intermediate_identity,
    create_root_identity,
    extract_current_root_identity,
    resolve_root_source,
)
from .phases import Phase, RotationMaterial, TransitionPlan, propose_transition
from .rotation import RotationContext, advance_to, prepare, rollback, run_all_phases, run_verification
from .verification import VerificationReport, verify_phase

__version__ = "0.3.0"
__all__ = [
    "RotationConfig",
    "RotationError",
    "AppliedConfig",
    "PhaseTransitionExecutor",
    "RootIdentity",
    "IntermediateIdentity",
    "TrustBundle",
    "build_trust_bundle",
    "chain_validates",
    "create_intermediate_identity",
    "create_root_identity",
    "extract_current_root_identity",
    "resolve_root_source",
    "Phase",
    "RotationMaterial",
    "TransitionPlan",
    "propose_transition",
    "RotationContext",
    "advance_to",
    "prepare",
    "rollback",
    "run_all_phases",
    "run_verification",
    "VerificationReport",
    "verify_phase",
]
