"""
cluster.py — Cluster collaborators (kubectl / istioctl)

Two narrow interfaces sit between the rotation logic and Kubernetes:

  SecretStore            read / delete / create namespaced secrets
  WorkloadOrchestrator   rolling restart, bounded rollout wait, exec

The kubectl-backed implementations shell out. Secret payloads are piped to
``kubectl create -f -``; private keys are never written to a temporary file.
"""

from __future__ import annotations
import base64
import json
import logging
import subprocess
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import ClusterCommandError, PropagationTimeoutError

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, bytes]]: ...
    def delete_secret(self, name: str, namespace: str) -> None: ...
    def create_secret(self, name: str, namespace: str, data: Dict[str, bytes]) -> None: ...
    def get_configmap(self, name: str, namespace: str) -> Optional[Dict[str, str]]: ...


class WorkloadOrchestrator(Protocol):
    def rollout_restart(self, deployment: str, namespace: str) -> None: ...
    def wait_for_rollout(self, deployment: str, namespace: str, timeout: int) -> None: ...
    def exec(self, deployment: str, namespace: str, command: Sequence[str],
             container: Optional[str] = None) -> str: ...
    def list_pods(self, namespace: str, selector: Optional[str] = None) -> List[str]: ...


class CommandRunner:
    """Thin subprocess wrapper that turns non-zero exits into ``ClusterCommandError``."""

    def run(
        self,
        args: Sequence[str],
        input: Optional[bytes] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        logger.debug("exec: %s", " ".join(args))
        proc = subprocess.run(list(args), input=input, capture_output=True, timeout=timeout)
        if check and proc.returncode != 0:
            raise ClusterCommandError(args, proc.returncode, proc.stderr.decode("utf-8", "replace"))
        return proc


def _not_found(proc: subprocess.CompletedProcess) -> bool:
    return proc.returncode != 0 and b"NotFound" in proc.stderr


class KubectlSecretStore:
    def __init__(self, runner: Optional[CommandRunner] = None, kubectl: str = "kubectl"):
        self.runner = runner or CommandRunner()
        self.kubectl = kubectl

    def get_secret(self, name: str, namespace: str) -> Optional[Dict[str, bytes]]:
        """Return decoded secret data, or ``None`` if the secret does not exist."""
        args = [self.kubectl, "get", "secret", name, "-n", namespace, "-o", "json"]
        proc = self.runner.run(args, check=False)
        if _not_found(proc):
            return None
        if proc.returncode != 0:
            raise ClusterCommandError(args, proc.returncode, proc.stderr.decode("utf-8", "replace"))
        obj = json.loads(proc.stdout)
        return {k: base64.b64decode(v) for k, v in (obj.get("data") or {}).items()}

    def delete_secret(self, name: str, namespace: str) -> None:
        self.runner.run([self.kubectl, "delete", "secret", name, "-n", namespace, "--ignore-not-found"])
        logger.info("Deleted secret %s/%s", namespace, name)

    def create_secret(self, name: str, namespace: str, data: Dict[str, bytes]) -> None:
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace},
            "data": {k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
        }
        self.runner.run([self.kubectl, "create", "-f", "-"], input=json.dumps(manifest).encode("utf-8"))
        logger.info("Created secret %s/%s (%s)", namespace, name, ", ".join(sorted(data)))

    def get_configmap(self, name: str, namespace: str) -> Optional[Dict[str, str]]:
        args = [self.kubectl, "get", "configmap", name, "-n", namespace, "-o", "json"]
        proc = self.runner.run(args, check=False)
        if _not_found(proc):
            return None
        if proc.returncode != 0:
            raise ClusterCommandError(args, proc.returncode, proc.stderr.decode("utf-8", "replace"))
        return dict(json.loads(proc.stdout).get("data") or {})


class KubectlOrchestrator:
    def __init__(self, runner: Optional[CommandRunner] = None, kubectl: str = "kubectl"):
        self.runner = runner or CommandRunner()
        self.kubectl = kubectl

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self.runner.run([self.kubectl, "rollout", "restart", f"deployment/{deployment}", "-n", namespace])
        logger.info("Restarted deployment %s/%s", namespace, deployment)

    def wait_for_rollout(self, deployment: str, namespace: str, timeout: int) -> None:
        """Block until the rollout finishes.

        Raises:
            PropagationTimeoutError: If the rollout is not complete within ``timeout`` seconds.
            ClusterCommandError: For any other kubectl failure.
        """
        args = [self.kubectl, "rollout", "status", f"deployment/{deployment}",
                "-n", namespace, f"--timeout={timeout}s"]
        try:
            proc = self.runner.run(args, check=False, timeout=timeout + 30)
        except subprocess.TimeoutExpired:
            raise PropagationTimeoutError(f"{namespace}/{deployment} after {timeout}s") from None
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", "replace")
            if "timed out" in stderr or "exceeded its progress deadline" in stderr:
                raise PropagationTimeoutError(f"{namespace}/{deployment} after {timeout}s: {stderr.strip()}")
            raise ClusterCommandError(args, proc.returncode, stderr)
        logger.info("Deployment %s/%s is ready", namespace, deployment)

    def exec(self, deployment: str, namespace: str, command: Sequence[str],
             container: Optional[str] = None) -> str:
        args = [self.kubectl, "exec", f"deployment/{deployment}", "-n", namespace]
        if container:
            args += ["-c", container]
        args += ["--", *command]
        return self.runner.run(args).stdout.decode("utf-8", "replace")

    def list_pods(self, namespace: str, selector: Optional[str] = None) -> List[str]:
        args = [self.kubectl, "get", "pod", "-n", namespace, "-o", "jsonpath={.items[*].metadata.name}"]
        if selector:
            args += ["-l", selector]
        return self.runner.run(args).stdout.decode("utf-8").split()

    def apply_manifest(self, manifest: str) -> None:
        self.runner.run([self.kubectl, "apply", "-f", "-"], input=manifest.encode("utf-8"))

    def delete_manifest(self, manifest: str) -> None:
        self.runner.run([self.kubectl, "delete", "-f", "-", "--ignore-not-found"], input=manifest.encode("utf-8"))

    def deployment_env(self, deployment: str, namespace: str) -> Dict[str, str]:
        """Env vars of the first container; empty if the deployment is unreadable."""
        proc = self.runner.run(
            [self.kubectl, "get", "deployment", deployment, "-n", namespace, "-o", "json"], check=False
        )
        if proc.returncode != 0:
            return {}
        containers = json.loads(proc.stdout)["spec"]["template"]["spec"]["containers"]
        return {e["name"]: str(e.get("value", "")) for e in containers[0].get("env", [])}
