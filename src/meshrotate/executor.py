"""
executor.py — Phase Transition Executor

Applies a ``TransitionPlan`` to the ``cacerts`` secret:

  1. delete-then-recreate the secret with the plan's four fields
  2. sleep a fixed settle interval so proxies pick up the change
  3. read ``root-cert.pem`` back and compare its ordered anchors with the plan

Between the delete and the create there is no ``cacerts`` secret at all.
istiod keeps serving its last loaded CA through that gap.

A read-back mismatch is raised immediately. Nothing is retried and nothing is
rolled back: the operator decides.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional

from .cluster import SecretStore
from .errors import InvalidTransitionError, TransitionReadbackMismatchError
from .material import PLUGGED_IN_SECRET, TrustBundle
from .phases import Phase, RotationMaterial, TransitionPlan, propose_transition

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 30


@dataclass(frozen=True)
class AppliedConfig:
    phase: Phase
    applied_at_utc: str
    bundle: TrustBundle

    def anchor_ids(self) -> List[str]:
        return self.bundle.anchor_ids()


class PhaseTransitionExecutor:
    def __init__(
        self,
        store: SecretStore,
        namespace: str,
        settle_seconds: int = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        secret_name: str = PLUGGED_IN_SECRET,
    ):
        self.store = store
        self.namespace = namespace
        self.settle_seconds = settle_seconds
        self.sleep = sleep
        self.secret_name = secret_name

    def commit_transition(self, plan: TransitionPlan, attested: bool = False) -> AppliedConfig:
        """Apply a plan produced by :func:`propose_transition`.

        Args:
            plan: The transition to apply.
            attested: Operator confirmation that every live workload
                certificate is B-signed. Required for risky plans.

        Returns:
            AppliedConfig: The phase and the bundle read back from the cluster.

        Raises:
            InvalidTransitionError: Risky plan without attestation.
            TransitionReadbackMismatchError: Read-back does not match the plan.
        """
        if plan.risky and not attested:
            raise InvalidTransitionError(
                f"{plan.target.label} removes root A from the trust bundle; "
                "confirm every workload certificate is signed by root B first"
            )

        logger.info("Applying %s to secret %s/%s", plan.target.label, self.namespace, self.secret_name)
        self.store.delete_secret(self.secret_name, self.namespace)
        self.store.create_secret(self.secret_name, self.namespace, plan.configuration.to_secret_data())
        applied_at = datetime.now(timezone.utc).isoformat()
        logger.info("%s applied at %s", plan.target.label, applied_at)

        if self.settle_seconds > 0:
            logger.info("Waiting for certificates to propagate (%d seconds)...", self.settle_seconds)
            self.sleep(self.settle_seconds)

        observed = self.read_back(plan.expected_bundle.labels())
        if observed.fingerprints() != plan.expected_bundle.fingerprints():
            raise TransitionReadbackMismatchError(
                plan.expected_bundle.anchor_ids(),
                observed.anchor_ids(),
                context=f"{self.namespace}/{self.secret_name} after {plan.target.label}",
            )
        logger.info("Read back trust bundle {%s}", ", ".join(observed.anchor_ids()))
        return AppliedConfig(phase=plan.target, applied_at_utc=applied_at, bundle=observed)

    def apply_phase(self, target: Phase, current: Phase, material: RotationMaterial,
                    attested: bool = False) -> AppliedConfig:
        """Propose and commit in one call. ``current`` is the caller's declared phase."""
        return self.commit_transition(propose_transition(current, target, material), attested=attested)

    def read_back(self, labels: Optional[Mapping[str, str]] = None) -> TrustBundle:
        """Parse the live trust bundle. Read-only."""
        data = self.store.get_secret(self.secret_name, self.namespace)
        if data is None or not data.get("root-cert.pem"):
            return TrustBundle(pem=b"", anchors=())
        try:
            return TrustBundle.from_pem(data["root-cert.pem"], labels)
        except ValueError:
            return TrustBundle(pem=data["root-cert.pem"], anchors=())

