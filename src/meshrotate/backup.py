"""
backup.py — Pre-rotation snapshot and rollback

The snapshot is taken once, before the first transition, and never rewritten.
It holds both CA secrets as they were (whichever existed), encoded as
canonical JSON with a sha256 sidecar:

  backup/snapshot.json
  backup/snapshot.json.sha256

Rollback restores ``cacerts`` byte-for-byte if it existed, or deletes it so
istiod falls back to its self-signed ``istio-ca-secret``, then restarts istiod.

The per-secret YAML files of the shell rotation script
(``backup/cacerts.yaml``, ``backup/istio-ca-secret.yaml``) are not read.
A workspace holding only those is reported, and must be restored with
``kubectl apply -f``.
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from .canonical_json import canonical_bytes, decode_fields, encode_fields, sha256_hex
from .cluster import SecretStore, WorkloadOrchestrator
from .errors import ConfigurationNotFoundError, SnapshotIntegrityError, SnapshotMissingError
from .material import PLUGGED_IN_SECRET, SELF_SIGNED_SECRET

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "meshrotate-snapshot-v1"
CAPTURED_SECRETS = (SELF_SIGNED_SECRET, PLUGGED_IN_SECRET)
CONTROL_PLANE_DEPLOYMENT = "istiod"
LEGACY_BACKUP_FILES = ("cacerts.yaml", "istio-ca-secret.yaml")


@dataclass(frozen=True)
class Snapshot:
    taken_at_utc: str
    namespace: str
    records: Dict[str, Dict[str, bytes]]

    @property
    def plugged_in(self) -> bool:
        return PLUGGED_IN_SECRET in self.records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": SNAPSHOT_FORMAT,
            "taken_at_utc": self.taken_at_utc,
            "namespace": self.namespace,
            "records": {name: encode_fields(data) for name, data in self.records.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        if data.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotIntegrityError(f"unsupported snapshot format {data.get('format')!r}")
        return cls(
            taken_at_utc=data["taken_at_utc"],
            namespace=data["namespace"],
            records={name: decode_fields(fields) for name, fields in data["records"].items()},
        )


def _sidecar(path: Path) -> Path:
    return path.with_name(path.name + ".sha256")


def take_snapshot(store: SecretStore, namespace: str, path: Path) -> Snapshot:
    """Capture the CA secrets of ``namespace`` into ``path``.

    Raises:
        SnapshotIntegrityError: If a snapshot already exists at ``path``.
        ConfigurationNotFoundError: If neither CA secret exists.
    """
    if path.exists():
        raise SnapshotIntegrityError(f"{path} already exists; the pre-rotation snapshot is written once")

    records = {}
    for name in CAPTURED_SECRETS:
        data = store.get_secret(name, namespace)
        if data is not None:
            records[name] = data
            logger.info("Backed up %s", name)
    if not records:
        raise ConfigurationNotFoundError(f"nothing to back up in namespace {namespace}")

    snapshot = Snapshot(
        taken_at_utc=datetime.now(timezone.utc).isoformat(),
        namespace=namespace,
        records=records,
    )
    body = canonical_bytes(snapshot.to_dict())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(body)
    os.chmod(path, 0o600)
    _sidecar(path).write_text(f"{sha256_hex(body)}  {path.name}\n", encoding="utf-8")
    logger.info("Backup completed to %s", path)
    return snapshot


def load_snapshot(path: Path) -> Snapshot:
    """Read and digest-check a snapshot.

    Raises:
        SnapshotMissingError: No snapshot at ``path``.
        SnapshotIntegrityError: Sidecar missing or digest mismatch.
    """
    if not path.is_file():
        legacy = [path.parent / name for name in LEGACY_BACKUP_FILES if (path.parent / name).is_file()]
        if legacy:
            raise SnapshotMissingError(
                f"{path} not found, but {', '.join(str(p) for p in legacy)} exist from the shell rotation "
                f"script; restore them with `kubectl apply -f` (if only {SELF_SIGNED_SECRET}.yaml is "
                f"present, delete {PLUGGED_IN_SECRET} instead)"
            )
        raise SnapshotMissingError(f"{path} not found; run `meshrotate prepare` first")
    body = path.read_bytes()
    sidecar = _sidecar(path)
    if not sidecar.is_file():
        raise SnapshotIntegrityError(f"{sidecar} not found")
    recorded = sidecar.read_text(encoding="utf-8").split()[0]
    if recorded != sha256_hex(body):
        raise SnapshotIntegrityError(f"{path} digest {sha256_hex(body)[:16]} != recorded {recorded[:16]}")
    return Snapshot.from_dict(json.loads(body))


def reuse_snapshot(store: SecretStore, namespace: str, path: Path) -> Snapshot:
    """Accept an existing snapshot only if the cluster still matches it.

    Raises:
        SnapshotIntegrityError: The snapshot is for another namespace, fails
            its digest check, or the live CA secrets have changed since.
    """
    snapshot = load_snapshot(path)
    if snapshot.namespace != namespace:
        raise SnapshotIntegrityError(f"{path} was taken in namespace {snapshot.namespace}, not {namespace}")
    live = {}
    for name in CAPTURED_SECRETS:
        data = store.get_secret(name, namespace)
        if data is not None:
            live[name] = data
    if live != snapshot.records:
        changed = sorted(n for n in set(live) | set(snapshot.records) if live.get(n) != snapshot.records.get(n))
        raise SnapshotIntegrityError(
            f"live secrets {changed} differ from {path}; run `meshrotate rollback` or use a new work dir"
        )
    logger.info("Reusing snapshot taken at %s", snapshot.taken_at_utc)
    return snapshot


def restore_snapshot(
    snapshot: Snapshot,
    store: SecretStore,
    orchestrator: WorkloadOrchestrator,
    rollout_timeout: int = 300,
) -> None:
    """Put the CA secrets back the way the snapshot found them and restart istiod."""
    ns = snapshot.namespace
    if snapshot.plugged_in:
        logger.info("Restoring %s secret...", PLUGGED_IN_SECRET)
        store.delete_secret(PLUGGED_IN_SECRET, ns)
        store.create_secret(PLUGGED_IN_SECRET, ns, snapshot.records[PLUGGED_IN_SECRET])
    else:
        logger.info("Removing %s; istiod will use its self-signed CA", PLUGGED_IN_SECRET)
        store.delete_secret(PLUGGED_IN_SECRET, ns)

    if SELF_SIGNED_SECRET in snapshot.records and store.get_secret(SELF_SIGNED_SECRET, ns) is None:
        logger.warning("%s disappeared during rotation; recreating it", SELF_SIGNED_SECRET)
        store.create_secret(SELF_SIGNED_SECRET, ns, snapshot.records[SELF_SIGNED_SECRET])

    logger.info("Restarting %s to pick up changes...", CONTROL_PLANE_DEPLOYMENT)
    orchestrator.rollout_restart(CONTROL_PLANE_DEPLOYMENT, ns)
    orchestrator.wait_for_rollout(CONTROL_PLANE_DEPLOYMENT, ns, rollout_timeout)
    logger.info("Rollback completed")
