"""
phases.py — Trust State Machine

  Phase     Signer                Trust bundle
  -------   -------------------   ------------
  initial   root A (as found)     {A}
  phase1    root A (unchanged)    {A, B}
  phase2    intermediate of B     {A, B, B}
  phase3    intermediate of B     {B}

The bundle only grows until phase3, so every step before it keeps existing
workload certificates valid. Entering phase3 narrows trust and is the only
risky transition; it requires the operator to attest that every live
workload certificate is already B-signed.

Transitions are planned by :func:`propose_transition`, which has no side
effects. Applying a plan is the executor's job.
"""

from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import InvalidTransitionError
from .material import IntermediateIdentity, RootIdentity, TrustBundle, build_trust_bundle

_PHASE_NAME = re.compile(r"^(?:phase[-_]?)?(\d)$")


class Phase(IntEnum):
    INITIAL = 0
    PHASE1 = 1
    PHASE2 = 2
    PHASE3 = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    def next(self) -> Optional["Phase"]:
        if self is Phase.PHASE3:
            return None
        return Phase(self + 1)

    @classmethod
    def parse(cls, value: str) -> "Phase":
        """Accept ``initial``, ``phase2``, ``PHASE2``, ``phase-2`` or a bare ``2``."""
        v = value.strip().lower()
        if v == "initial":
            return cls.INITIAL
        m = _PHASE_NAME.match(v)
        if m and int(m.group(1)) <= cls.PHASE3:
            return cls(int(m.group(1)))
        raise ValueError(f"unknown phase {value!r}; expected one of {[p.label for p in cls]}")


@dataclass(frozen=True)
class PhaseSpec:
    phase: Phase
    signer: str
    bundle_roots: Tuple[str, ...]
    title: str
    risky: bool = False


PHASE_TABLE: Dict[Phase, PhaseSpec] = {
    Phase.INITIAL: PhaseSpec(Phase.INITIAL, "A", ("A",), "Root A signs and is the only trust anchor"),
    Phase.PHASE1: PhaseSpec(Phase.PHASE1, "A", ("A", "B"), "Add Root B to trust store"),
    # B twice: the legacy combined-root2.pem layout, kept byte-compatible.
    Phase.PHASE2: PhaseSpec(Phase.PHASE2, "B", ("A", "B", "B"), "Switch to Root B for signing"),
    Phase.PHASE3: PhaseSpec(Phase.PHASE3, "B", ("B",), "Remove Root A from trust store", risky=True),
}


@dataclass(frozen=True)
class RotationMaterial:
    """Everything the phase table draws from."""
    root_a: RootIdentity
    root_b: RootIdentity
    intermediate_b: IntermediateIdentity

    def root(self, identifier: str) -> RootIdentity:
        if identifier == "A":
            return self.root_a
        if identifier == "B":
            return self.root_b
        raise KeyError(identifier)


@dataclass(frozen=True)
class SigningConfiguration:
    """The four fields of the ``cacerts`` secret."""
    ca_cert: bytes
    ca_key: bytes = field(repr=False)
    root_cert: bytes
    cert_chain: bytes

    def to_secret_data(self) -> Dict[str, bytes]:
        return {
            "ca-cert.pem": self.ca_cert,
            "ca-key.pem": self.ca_key,
            "root-cert.pem": self.root_cert,
            "cert-chain.pem": self.cert_chain,
        }

    @classmethod
    def from_secret_data(cls, data: Dict[str, bytes]) -> "SigningConfiguration":
        return cls(
            ca_cert=data["ca-cert.pem"],
            ca_key=data["ca-key.pem"],
            root_cert=data["root-cert.pem"],
            cert_chain=data["cert-chain.pem"],
        )


def trust_bundle_for(phase: Phase, material: RotationMaterial) -> TrustBundle:
    return build_trust_bundle([material.root(r) for r in PHASE_TABLE[phase].bundle_roots])


def signing_configuration_for(phase: Phase, material: RotationMaterial) -> SigningConfiguration:
    """Materialize the phase table row for ``phase``."""
    bundle = trust_bundle_for(phase, material)
    if PHASE_TABLE[phase].signer == "A":
        a = material.root_a
        if a.signing_cert_pem is None or a.signing_key_pem is None or a.cert_chain_pem is None:
            raise ValueError("root A carries no signing material")
        return SigningConfiguration(
            ca_cert=a.signing_cert_pem,
            ca_key=a.signing_key_pem,
            root_cert=bundle.to_pem(),
            cert_chain=a.cert_chain_pem,
        )
    inter = material.intermediate_b
    return SigningConfiguration(
        ca_cert=inter.certificate_pem,
        ca_key=inter.private_key_pem,
        root_cert=bundle.to_pem(),
        cert_chain=inter.chain_pem,
    )


@dataclass(frozen=True)
class TransitionPlan:
    current: Phase
    target: Phase
    configuration: SigningConfiguration
    expected_bundle: TrustBundle
    signer_before: str
    signer_after: str
    anchors_before: Tuple[str, ...]
    anchors_after: Tuple[str, ...]
    risky: bool

    def describe(self) -> List[str]:
        spec = PHASE_TABLE[self.target]
        lines = [
            f"{self.current.label} -> {self.target.label}: {spec.title}",
            f"  signer:       {_signer_name(self.signer_before)} -> {_signer_name(self.signer_after)}",
            f"  trust bundle: {{{', '.join(self.anchors_before)}}} -> {{{', '.join(self.anchors_after)}}}",
        ]
        if self.risky:
            lines.append("  RISKY: narrows the trust bundle; workloads still holding A-signed certificates will fail")
        return lines


def _signer_name(signer: str) -> str:
    return "root A" if signer == "A" else "intermediate of root B"


def check_transition(current: Phase, target: Phase) -> None:
    """Only a single forward step is allowed.

    Raises:
        InvalidTransitionError: For backward, repeated, or skipping transitions.
    """
    if current.next() is not target:
        expected = current.next()
        hint = f"next allowed phase is {expected.label}" if expected else "rotation is already complete"
        raise InvalidTransitionError(f"{current.label} -> {target.label}; {hint}")


def propose_transition(current: Phase, target: Phase, material: RotationMaterial) -> TransitionPlan:
    """Describe what applying ``target`` would change. Side-effect free."""
    check_transition(current, target)
    before, after = PHASE_TABLE[current], PHASE_TABLE[target]
    return TransitionPlan(
        current=current,
        target=target,
        configuration=signing_configuration_for(target, material),
        expected_bundle=trust_bundle_for(target, material),
        signer_before=before.signer,
        signer_after=after.signer,
        anchors_before=before.bundle_roots,
        anchors_after=after.bundle_roots,
        risky=after.risky,
    )


def infer_phase(anchor_ids: Sequence[str]) -> Optional[Phase]:
    """Guess the phase from the ordered anchor ids of a live bundle.

    Diagnostic only; ``advance`` never relies on it.
    """
    ids = tuple(anchor_ids)
    for phase, spec in PHASE_TABLE.items():
        if spec.bundle_roots == ids:
            return phase
    return None
