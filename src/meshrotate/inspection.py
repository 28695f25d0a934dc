"""
inspection.py — Read-only view of the live CA state

Nothing in this module writes to the cluster. The phase inferred from the
live bundle is a cross-check against the declared phase in the workspace,
never a substitute for it.
"""

from __future__ import annotations
import base64
import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .cluster import CommandRunner, SecretStore, WorkloadOrchestrator
from .material import (
    PLUGGED_IN_SECRET,
    SELF_SIGNED_SECRET,
    RootIdentity,
    TrustBundle,
    anchor_labels,
    build_trust_bundle,
    chain_validates,
    load_certificates,
)
from .phases import Phase, infer_phase
from .workspace import Workspace

logger = logging.getLogger(__name__)

ROOT_CONFIGMAP = "istio-ca-root-cert"


@dataclass(frozen=True)
class CurrentState:
    secret_name: Optional[str]
    bundle: Optional[TrustBundle]
    inferred_phase: Optional[Phase]
    declared_phase: Optional[Phase]
    distributed_bundle: Optional[TrustBundle]

    @property
    def consistent(self) -> bool:
        return self.declared_phase is not None and self.declared_phase == self.inferred_phase

    def lines(self) -> List[str]:
        out = []
        if self.secret_name is None:
            out.append("CA secret: none found")
        else:
            kind = "plugged-in CA" if self.secret_name == PLUGGED_IN_SECRET else "self-signed CA"
            out.append(f"CA secret: {self.secret_name} ({kind})")
        if self.bundle is not None:
            out.append(f"Trust bundle: {{{', '.join(self.bundle.anchor_ids())}}}")
            for a in self.bundle.anchors:
                out.append(f"  [{a.identifier}] {a.subject} sha256={a.fingerprint[:16]}")
        out.append(f"Inferred phase: {self.inferred_phase.label if self.inferred_phase is not None else 'unknown'}")
        out.append(f"Declared phase: {self.declared_phase.label if self.declared_phase is not None else 'none'}")
        if self.declared_phase is not None and not self.consistent:
            out.append("WARNING: declared and inferred phase disagree; inspect before advancing")
        if self.distributed_bundle is None:
            out.append(f"Distributed root ({ROOT_CONFIGMAP}): not found")
        else:
            out.append(f"Distributed root ({ROOT_CONFIGMAP}): {{{', '.join(self.distributed_bundle.anchor_ids())}}}")
        return out


def _parse(pem: Optional[bytes], labels: Dict[str, str]) -> Optional[TrustBundle]:
    if not pem:
        return None
    try:
        return TrustBundle.from_pem(pem, labels)
    except ValueError:
        logger.warning("Could not parse certificate bundle")
        return None


def inspect_current_state(
    store: SecretStore,
    namespace: str,
    workspace: Workspace,
    workload_namespace: str = "default",
) -> CurrentState:
    """Describe the live CA state without changing it."""
    labels = anchor_labels(workspace.load_known_roots())

    secret_name = None
    pem = None
    cacerts = store.get_secret(PLUGGED_IN_SECRET, namespace)
    if cacerts is not None:
        secret_name, pem = PLUGGED_IN_SECRET, cacerts.get("root-cert.pem")
    else:
        self_signed = store.get_secret(SELF_SIGNED_SECRET, namespace)
        if self_signed is not None:
            secret_name, pem = SELF_SIGNED_SECRET, self_signed.get("ca-cert.pem")

    bundle = _parse(pem, labels)
    inferred = infer_phase(bundle.anchor_ids()) if bundle is not None else None

    cm = store.get_configmap(ROOT_CONFIGMAP, workload_namespace)
    distributed = _parse(cm.get("root-cert.pem", "").encode("utf-8"), labels) if cm else None

    return CurrentState(
        secret_name=secret_name,
        bundle=bundle,
        inferred_phase=inferred,
        declared_phase=workspace.read_phase(),
        distributed_bundle=distributed,
    )


# ---------------------------------------------------------------------------
# Workload certificates
# ---------------------------------------------------------------------------

def workload_certificate_chain(
    runner: CommandRunner,
    pod: str,
    namespace: str,
    istioctl: str = "istioctl",
) -> List[x509.Certificate]:
    """Fetch the certificate chain a sidecar is currently serving."""
    out = runner.run([istioctl, "proxy-config", "secret", f"{pod}.{namespace}", "-o", "json"]).stdout
    dump = json.loads(out)
    for entry in dump.get("dynamicActiveSecrets", []):
        inline = (
            entry.get("secret", {})
            .get("tlsCertificate", {})
            .get("certificateChain", {})
            .get("inlineBytes")
        )
        if inline:
            return load_certificates(base64.b64decode(inline))
    return []


def issuing_root(chain: Sequence[x509.Certificate], roots: Sequence[RootIdentity]) -> Optional[str]:
    """Identifier of the first root in ``roots`` the chain validates against."""
    if not chain:
        return None
    pem = b"".join(c.public_bytes(serialization.Encoding.PEM) for c in chain)
    for root in roots:
        if chain_validates(pem, build_trust_bundle([root])):
            return root.identifier
    return None


def sample_workload_roots(
    orchestrator: WorkloadOrchestrator,
    runner: CommandRunner,
    namespace: str,
    roots: Sequence[RootIdentity],
    limit: int = 5,
) -> Dict[str, Optional[str]]:
    """Map up to ``limit`` pods in ``namespace`` to the root signing their certificate."""
    result: Dict[str, Optional[str]] = {}
    for pod in orchestrator.list_pods(namespace)[:limit]:
        chain = workload_certificate_chain(runner, pod, namespace)
        result[pod] = issuing_root(chain, roots)
        logger.info("Workload %s/%s: signed by root %s", namespace, pod, result[pod] or "unknown")
    return result


# ---------------------------------------------------------------------------
# Traffic and control-plane diagnostics
# ---------------------------------------------------------------------------

REQUEST_METRIC = "istio_requests_total"
CONTROL_PLANE_LOG_PATTERN = re.compile(r"cert|root|ca", re.IGNORECASE)


def _text(out) -> str:
    return out.decode("utf-8", errors="replace") if isinstance(out, bytes) else out


def traffic_metrics(
    runner: CommandRunner,
    pod: str,
    namespace: str,
    istioctl: str = "istioctl",
    limit: int = 5,
) -> List[str]:
    """First ``limit`` ``istio_requests_total`` samples from a sidecar's Prometheus stats."""
    proc = runner.run(
        [istioctl, "experimental", "envoy-stats", f"{pod}.{namespace}", "--output", "prom"], check=False
    )
    if proc.returncode != 0:
        logger.warning("Could not read envoy stats for %s/%s", namespace, pod)
        return []
    samples = [
        line for line in _text(proc.stdout).splitlines()
        if REQUEST_METRIC in line and not line.startswith("#")
    ]
    return samples[:limit]


def sample_traffic_metrics(
    orchestrator: WorkloadOrchestrator,
    runner: CommandRunner,
    namespace: str,
    limit: int = 1,
) -> Dict[str, List[str]]:
    """Request metrics for up to ``limit`` pods in ``namespace``."""
    result: Dict[str, List[str]] = {}
    for pod in orchestrator.list_pods(namespace)[:limit]:
        result[pod] = traffic_metrics(runner, pod, namespace)
        if not result[pod]:
            logger.warning("Workload %s/%s reports no request metrics", namespace, pod)
    return result


def control_plane_cert_log(
    runner: CommandRunner,
    namespace: str,
    tail: int = 20,
    kubectl: str = "kubectl",
) -> List[str]:
    """Certificate-related lines from the last ``tail`` lines of the istiod log."""
    proc = runner.run([kubectl, "logs", "-n", namespace, "deployment/istiod", f"--tail={tail}"], check=False)
    if proc.returncode != 0:
        logger.warning("Could not read istiod logs in %s", namespace)
        return []
    return [line for line in _text(proc.stdout).splitlines() if CONTROL_PLANE_LOG_PATTERN.search(line)]
