"""
preflight.py — Checks run before anything is mutated
"""

from __future__ import annotations
import logging
import shutil
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .cluster import KubectlOrchestrator, SecretStore
from .errors import PrerequisiteMissingError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("kubectl", "istioctl")

_MULTIROOT_HINT = '''\
  values:
    pilot:
      env:
        ISTIO_MULTIROOT_MESH: "true"'''

_XDS_AGENT_HINT = '''\
  meshConfig:
    defaultConfig:
      proxyMetadata:
        PROXY_CONFIG_XDS_AGENT: "true"'''


def check_prerequisites(
    tools: Sequence[str] = REQUIRED_TOOLS,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    """Fail fast if any required CLI is missing.

    Raises:
        PrerequisiteMissingError: Lists every missing tool.
    """
    logger.info("Checking prerequisites...")
    missing = [t for t in tools if which(t) is None]
    if missing:
        raise PrerequisiteMissingError(f"missing required tools: {', '.join(missing)}")
    logger.info("All prerequisites met")


@dataclass(frozen=True)
class MeshConfigCheck:
    multiroot: bool
    xds_agent: bool

    @property
    def ok(self) -> bool:
        return self.multiroot and self.xds_agent

    def warnings(self) -> List[str]:
        out = []
        if not self.multiroot:
            out.append("ISTIO_MULTIROOT_MESH is not enabled on istiod. Update your Istio installation with:\n"
                       + _MULTIROOT_HINT)
        if not self.xds_agent:
            out.append("PROXY_CONFIG_XDS_AGENT may not be enabled in mesh config. Update your Istio installation with:\n"
                       + _XDS_AGENT_HINT)
        return out


def check_mesh_config(orchestrator: KubectlOrchestrator, store: SecretStore, namespace: str) -> MeshConfigCheck:
    """Look for the two settings multi-root trust depends on. Read-only."""
    logger.info("Checking Istio configuration for multi-root support...")
    env = orchestrator.deployment_env("istiod", namespace)
    mesh = (store.get_configmap("istio", namespace) or {}).get("mesh", "")
    result = MeshConfigCheck(
        multiroot=env.get("ISTIO_MULTIROOT_MESH", "").lower() == "true",
        xds_agent="PROXY_CONFIG_XDS_AGENT" in mesh,
    )
    for warning in result.warnings():
        logger.warning(warning)
    return result
