"""
workspace.py — On-disk rotation workspace

Layout (file names are those of the shell rotation script):

  <root>/backup/snapshot.json
  <root>/rootA/{root-cert,ca-cert,ca-key,cert-chain}.pem
  <root>/rootB/{root-cert,root-key}.pem
  <root>/rootB/intermediateB/{ca-cert,ca-key,root-cert,cert-chain}.pem
  <root>/combined-root.pem     A + B
  <root>/combined-root2.pem    A + B + B
  <root>/phase.json            declared current phase and whether it passed verification
"""

from __future__ import annotations
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .canonical_json import canonical_dumps
from .errors import WorkspaceIncompleteError
from .material import IntermediateIdentity, RootIdentity, build_trust_bundle
from .phases import Phase, RotationMaterial

logger = logging.getLogger(__name__)


def _write(path: Path, data: bytes, secret: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if secret:
        os.chmod(path, 0o600)


class Workspace:
    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def backup_dir(self) -> Path:
        return self.root / "backup"

    @property
    def snapshot_path(self) -> Path:
        return self.backup_dir / "snapshot.json"

    @property
    def root_a_dir(self) -> Path:
        return self.root / "rootA"

    @property
    def root_b_dir(self) -> Path:
        return self.root / "rootB"

    @property
    def intermediate_b_dir(self) -> Path:
        return self.root_b_dir / "intermediateB"

    @property
    def combined_root(self) -> Path:
        return self.root / "combined-root.pem"

    @property
    def combined_root2(self) -> Path:
        return self.root / "combined-root2.pem"

    @property
    def phase_file(self) -> Path:
        return self.root / "phase.json"

    # -- writers -------------------------------------------------------------

    def write_root_a(self, root: RootIdentity) -> None:
        if root.signing_cert_pem is None or root.signing_key_pem is None or root.cert_chain_pem is None:
            raise ValueError("root A must carry the live signing material")
        d = self.root_a_dir
        _write(d / "root-cert.pem", root.certificate_pem)
        _write(d / "ca-cert.pem", root.signing_cert_pem)
        _write(d / "ca-key.pem", root.signing_key_pem, secret=True)
        _write(d / "cert-chain.pem", root.cert_chain_pem)
        logger.info("Wrote current root to %s", d)

    def write_root_b(self, root: RootIdentity, intermediate: IntermediateIdentity) -> None:
        if root.private_key_pem is None:
            raise ValueError("root B must carry its private key")
        _write(self.root_b_dir / "root-cert.pem", root.certificate_pem)
        _write(self.root_b_dir / "root-key.pem", root.private_key_pem, secret=True)
        d = self.intermediate_b_dir
        _write(d / "ca-cert.pem", intermediate.certificate_pem)
        _write(d / "ca-key.pem", intermediate.private_key_pem, secret=True)
        _write(d / "root-cert.pem", intermediate.root_pem)
        _write(d / "cert-chain.pem", intermediate.chain_pem)
        logger.info("Wrote new root and intermediate to %s", self.root_b_dir)

    def write_combined_bundles(self, root_a: RootIdentity, root_b: RootIdentity) -> None:
        _write(self.combined_root, build_trust_bundle([root_a, root_b]).to_pem())
        _write(self.combined_root2, build_trust_bundle([root_a, root_b, root_b]).to_pem())
        logger.info("Wrote combined root bundles")

    # -- readers -------------------------------------------------------------

    def required_files(self) -> List[Path]:
        a, b, ib = self.root_a_dir, self.root_b_dir, self.intermediate_b_dir
        return [
            a / "root-cert.pem", a / "ca-cert.pem", a / "ca-key.pem", a / "cert-chain.pem",
            b / "root-cert.pem", b / "root-key.pem",
            ib / "ca-cert.pem", ib / "ca-key.pem", ib / "root-cert.pem", ib / "cert-chain.pem",
            self.combined_root, self.combined_root2,
        ]

    def missing_files(self) -> List[Path]:
        return [p for p in self.required_files() if not p.is_file()]

    def is_prepared(self) -> bool:
        return not self.missing_files()

    def load_root_a(self) -> RootIdentity:
        d = self.root_a_dir
        return RootIdentity(
            identifier="A",
            certificate_pem=(d / "root-cert.pem").read_bytes(),
            signing_cert_pem=(d / "ca-cert.pem").read_bytes(),
            signing_key_pem=(d / "ca-key.pem").read_bytes(),
            cert_chain_pem=(d / "cert-chain.pem").read_bytes(),
        )

    def load_root_b(self) -> RootIdentity:
        return RootIdentity(
            identifier="B",
            certificate_pem=(self.root_b_dir / "root-cert.pem").read_bytes(),
            private_key_pem=(self.root_b_dir / "root-key.pem").read_bytes(),
        )

    def load_intermediate_b(self) -> IntermediateIdentity:
        d = self.intermediate_b_dir
        return IntermediateIdentity(
            issuer_id="B",
            certificate_pem=(d / "ca-cert.pem").read_bytes(),
            private_key_pem=(d / "ca-key.pem").read_bytes(),
            root_pem=(d / "root-cert.pem").read_bytes(),
            chain_pem=(d / "cert-chain.pem").read_bytes(),
        )

    def load_material(self) -> RotationMaterial:
        """Load roots A and B and B's intermediate.

        Raises:
            WorkspaceIncompleteError: If ``prepare`` has not produced every artifact.
        """
        missing = self.missing_files()
        if missing:
            rel = [str(p.relative_to(self.root)) for p in missing]
            raise WorkspaceIncompleteError(f"{self.root}: missing {rel}; run `meshrotate prepare` first")
        return RotationMaterial(
            root_a=self.load_root_a(),
            root_b=self.load_root_b(),
            intermediate_b=self.load_intermediate_b(),
        )

    def load_known_roots(self) -> List[RootIdentity]:
        """Whatever roots are on disk, for labelling anchors. Never raises for absence."""
        roots = []
        if (self.root_a_dir / "root-cert.pem").is_file():
            roots.append(RootIdentity("A", (self.root_a_dir / "root-cert.pem").read_bytes()))
        if (self.root_b_dir / "root-cert.pem").is_file():
            roots.append(RootIdentity("B", (self.root_b_dir / "root-cert.pem").read_bytes()))
        return roots

    # -- declared phase -------------------------------------------------------

    def read_phase_record(self) -> Optional[Dict[str, Any]]:
        if not self.phase_file.is_file():
            return None
        return json.loads(self.phase_file.read_text(encoding="utf-8"))

    def read_phase(self) -> Optional[Phase]:
        record = self.read_phase_record()
        if record is None:
            return None
        return Phase.parse(record["phase"])

    def phase_verified(self, phase: Phase) -> bool:
        """True only when ``phase`` is the declared phase and its verification passed."""
        record = self.read_phase_record()
        if record is None or Phase.parse(record["phase"]) is not phase:
            return False
        return record.get("verified") is True

    def write_phase(self, phase: Phase, verified: bool = False) -> None:
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "phase": phase.label,
            "updated_at_utc": now,
            "verified": verified,
        }
        if verified:
            record["verified_at_utc"] = now
        _write(self.phase_file, (canonical_dumps(record) + "\n").encode("utf-8"))
        logger.info("Declared phase is now %s (verified=%s)", phase.label, verified)
