"""
conftest.py — In-memory cluster fakes and certificate fixtures

Keys are 2048-bit so the suite stays fast; everything else matches what the
CLI would generate.
"""

import copy
import dataclasses
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from meshrotate.config import RotationConfig
from meshrotate.errors import ClusterCommandError
from meshrotate.material import (
    PLUGGED_IN_SECRET,
    SELF_SIGNED_SECRET,
    create_intermediate_identity,
    create_root_identity,
)
from meshrotate.phases import RotationMaterial
from meshrotate.probes import ProbeRecord
from meshrotate.rotation import RotationContext

TEST_KEY_SIZE = 2048
NAMESPACE = "istio-system"


class InMemorySecretStore:
    """Dict-backed ``SecretStore`` that records every mutation."""

    def __init__(self):
        self.secrets: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self.configmaps: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.mutations: List[Tuple[str, str, str]] = []
        self.reads = 0

    def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, bytes]]:
        self.reads += 1
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None

    def delete_secret(self, name: str, namespace: str) -> None:
        self.mutations.append(("delete", namespace, name))
        self.secrets.pop((namespace, name), None)

    def create_secret(self, name: str, namespace: str, data: Dict[str, bytes]) -> None:
        if (namespace, name) in self.secrets:
            raise ClusterCommandError(["kubectl", "create", "-f", "-"], 1, f'secrets "{name}" already exists')
        self.mutations.append(("create", namespace, name))
        self.secrets[(namespace, name)] = dict(data)

    def get_configmap(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        data = self.configmaps.get((namespace, name))
        return dict(data) if data is not None else None

    def state(self) -> Dict[Tuple[str, str], Dict[str, bytes]]:
        return copy.deepcopy(self.secrets)


class FakeOrchestrator:
    """Records restarts and waits; ``exec`` replies from a queue."""

    def __init__(self, exec_outputs: Sequence[str] = (), pods: Sequence[str] = ()):
        self.calls: List[tuple] = []
        self.exec_outputs = list(exec_outputs)
        self.pods = list(pods)
        self.wait_error: Optional[Exception] = None
        self.env: Dict[str, str] = {}

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self.calls.append(("restart", deployment, namespace))

    def wait_for_rollout(self, deployment: str, namespace: str, timeout: int) -> None:
        self.calls.append(("wait", deployment, namespace, timeout))
        if self.wait_error is not None:
            raise self.wait_error

    def exec(self, deployment, namespace, command, container=None) -> str:
        self.calls.append(("exec", deployment, namespace, tuple(command), container))
        return self.exec_outputs.pop(0)

    def list_pods(self, namespace: str, selector: Optional[str] = None) -> List[str]:
        self.calls.append(("list_pods", namespace, selector))
        return list(self.pods)

    def apply_manifest(self, manifest: str) -> None:
        self.calls.append(("apply", manifest))

    def delete_manifest(self, manifest: str) -> None:
        self.calls.append(("delete", manifest))

    def deployment_env(self, deployment: str, namespace: str) -> Dict[str, str]:
        return dict(self.env)


class FakeProbeHarness:
    """Hands out one queued observation window per ``read_log``."""

    def __init__(self, windows: Sequence[Sequence[ProbeRecord]]):
        self.windows = [list(w) for w in windows]
        self.calls: List[tuple] = []

    def restart(self, role: str) -> None:
        self.calls.append(("restart", role))

    def wait_ready(self, role: str, timeout: int) -> None:
        self.calls.append(("wait_ready", role))

    def reset_log(self) -> None:
        self.calls.append(("reset",))

    def read_log(self) -> List[ProbeRecord]:
        self.calls.append(("read",))
        return self.windows.pop(0)

    def restarted(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "restart"]


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(scope="session")
def generated_root_a():
    return create_root_identity("A", 3650, TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def root_a(generated_root_a):
    """Root A as extracted from a self-signed istiod secret."""
    return dataclasses.replace(
        generated_root_a,
        signing_cert_pem=generated_root_a.certificate_pem,
        signing_key_pem=generated_root_a.private_key_pem,
        cert_chain_pem=generated_root_a.certificate_pem,
    )


@pytest.fixture(scope="session")
def root_b():
    return create_root_identity("B", 3650, TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def intermediate_b(root_b):
    return create_intermediate_identity(root_b, 365, TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def material(root_a, root_b, intermediate_b):
    return RotationMaterial(root_a=root_a, root_b=root_b, intermediate_b=intermediate_b)


@pytest.fixture
def self_signed_store(generated_root_a):
    store = InMemorySecretStore()
    store.secrets[(NAMESPACE, SELF_SIGNED_SECRET)] = {
        "ca-cert.pem": generated_root_a.certificate_pem,
        "ca-key.pem": generated_root_a.private_key_pem,
    }
    return store


@pytest.fixture
def plugged_in_store(generated_root_a):
    store = InMemorySecretStore()
    store.secrets[(NAMESPACE, PLUGGED_IN_SECRET)] = {
        "root-cert.pem": generated_root_a.certificate_pem,
        "ca-cert.pem": generated_root_a.certificate_pem,
        "ca-key.pem": generated_root_a.private_key_pem,
        "cert-chain.pem": generated_root_a.certificate_pem,
    }
    return store


@pytest.fixture
def config(tmp_path):
    return RotationConfig(work_dir=tmp_path / "workspace", settle_seconds=0, key_size=TEST_KEY_SIZE)


def make_context(config, store, orchestrator=None):
    return RotationContext(
        config=config,
        store=store,
        orchestrator=orchestrator or FakeOrchestrator(),
        sleep=no_sleep,
    )
