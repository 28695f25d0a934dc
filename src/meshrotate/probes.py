"""
probes.py — Connectivity probe workloads

A ``probe-client`` deployment curls ``probe-server`` once per second through
the mesh and appends one line per request to an append-only log:

    2026-10-18T09:14:03Z OK 200
    2026-10-18T09:14:04Z FAIL 000 curl: (56) Recv failure: Connection reset by peer

The probe namespace enforces STRICT mTLS, so any trust gap between the two
sidecars shows up as a failed request.

The orchestrator only ever restarts the deployments and reads or truncates the
log. The client keeps writing while that happens, so a read directly after a
reset may race with an in-flight append. ``reset_log`` records the instant
reported by the pod and ``read_log`` drops anything stamped before it.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from .cluster import KubectlOrchestrator

logger = logging.getLogger(__name__)

CLIENT = "client"
SERVER = "server"
LOG_PATH = "/var/log/probe/probe.log"
PROBE_INTERVAL_SECONDS = 1
_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_MANIFEST = """\
apiVersion: v1
kind: Namespace
metadata:
  name: __NAMESPACE__
  labels:
    istio-injection: enabled
---
apiVersion: security.istio.io/v1beta1
kind: PeerAuthentication
metadata:
  name: probe-strict
  namespace: __NAMESPACE__
spec:
  mtls:
    mode: STRICT
---
apiVersion: v1
kind: Service
metadata:
  name: probe-server
  namespace: __NAMESPACE__
  labels:
    app: probe-server
spec:
  selector:
    app: probe-server
  ports:
  - name: http
    port: 8080
    targetPort: 8080
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: probe-server
  namespace: __NAMESPACE__
spec:
  replicas: 1
  selector:
    matchLabels:
      app: probe-server
  template:
    metadata:
      labels:
        app: probe-server
    spec:
      containers:
      - name: server
        image: hashicorp/http-echo:1.0
        args: ["-listen=:8080", "-text=probe-ok"]
        ports:
        - containerPort: 8080
        readinessProbe:
          tcpSocket:
            port: 8080
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: probe-client
  namespace: __NAMESPACE__
spec:
  replicas: 1
  selector:
    matchLabels:
      app: probe-client
  template:
    metadata:
      labels:
        app: probe-client
    spec:
      containers:
      - name: client
        image: curlimages/curl:8.10.1
        command: ["/bin/sh", "-c"]
        args:
        - |
          mkdir -p /var/log/probe
          while true; do
            ts=$(date -u +%Y-%m-%dT%H:%M:%SZ)
            code=$(curl -sS -o /dev/null -w '%{http_code}' --max-time 2 http://probe-server:8080/ 2>/tmp/curl.err)
            if [ "$code" = "200" ]; then
              echo "$ts OK $code" >> __LOG_PATH__
            else
              echo "$ts FAIL ${code:-000} $(tr '\\n' ' ' < /tmp/curl.err)" >> __LOG_PATH__
            fi
            sleep __INTERVAL__
          done
        volumeMounts:
        - name: probe-log
          mountPath: /var/log/probe
      volumes:
      - name: probe-log
        emptyDir: {}
"""


def render_manifest(namespace: str) -> str:
    return (
        _MANIFEST.replace("__NAMESPACE__", namespace)
        .replace("__LOG_PATH__", LOG_PATH)
        .replace("__INTERVAL__", str(PROBE_INTERVAL_SECONDS))
    )


def deployment_name(role: str) -> str:
    if role not in (CLIENT, SERVER):
        raise ValueError(f"unknown probe role {role!r}")
    return f"probe-{role}"


@dataclass(frozen=True)
class ProbeRecord:
    timestamp: datetime
    ok: bool
    http_status: str
    detail: str = ""

    def to_line(self) -> str:
        line = f"{self.timestamp.strftime(_TS_FORMAT)} {'OK' if self.ok else 'FAIL'} {self.http_status}"
        return f"{line} {self.detail}" if self.detail else line


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value.strip(), _TS_FORMAT).replace(tzinfo=timezone.utc)


def parse_log(text: str, since: Optional[datetime] = None) -> List[ProbeRecord]:
    """Parse probe log lines, keeping only entries stamped at or after ``since``."""
    records = []
    for line in text.splitlines():
        parts = line.strip().split(" ", 3)
        if len(parts) < 3 or parts[1] not in ("OK", "FAIL"):
            if line.strip():
                logger.debug("Skipping unparseable probe line: %r", line)
            continue
        try:
            ts = parse_timestamp(parts[0])
        except ValueError:
            logger.debug("Skipping probe line with bad timestamp: %r", line)
            continue
        if since is not None and ts < since:
            continue
        records.append(ProbeRecord(
            timestamp=ts,
            ok=parts[1] == "OK",
            http_status=parts[2],
            detail=parts[3].strip() if len(parts) > 3 else "",
        ))
    return records


class ProbeHarness(Protocol):
    """What the verification protocol needs from the probe pair."""
    def restart(self, role: str) -> None: ...
    def wait_ready(self, role: str, timeout: int) -> None: ...
    def reset_log(self) -> None: ...
    def read_log(self) -> List[ProbeRecord]: ...


@dataclass(frozen=True)
class ProbeStatus:
    pods: Sequence[str]
    total: int
    failures: int
    recent: Sequence[ProbeRecord]


class KubernetesProbeHarness:
    def __init__(self, orchestrator: KubectlOrchestrator, namespace: str, rollout_timeout: int = 300):
        self.orchestrator = orchestrator
        self.namespace = namespace
        self.rollout_timeout = rollout_timeout
        self.reset_at: Optional[datetime] = None

    def start(self) -> None:
        logger.info("Deploying probe workloads in %s", self.namespace)
        self.orchestrator.apply_manifest(render_manifest(self.namespace))
        for role in (SERVER, CLIENT):
            self.wait_ready(role, self.rollout_timeout)

    def stop(self) -> None:
        logger.info("Removing probe workloads from %s", self.namespace)
        self.orchestrator.delete_manifest(render_manifest(self.namespace))
        self.reset_at = None

    def status(self, tail: int = 10) -> ProbeStatus:
        pods = self.orchestrator.list_pods(self.namespace, "app in (probe-client,probe-server)")
        records = self.read_log()
        return ProbeStatus(
            pods=pods,
            total=len(records),
            failures=sum(1 for r in records if not r.ok),
            recent=records[-tail:],
        )

    def restart(self, role: str) -> None:
        self.orchestrator.rollout_restart(deployment_name(role), self.namespace)

    def wait_ready(self, role: str, timeout: int) -> None:
        self.orchestrator.wait_for_rollout(deployment_name(role), self.namespace, timeout)

    def reset_log(self) -> None:
        out = self.orchestrator.exec(
            deployment_name(CLIENT),
            self.namespace,
            ["sh", "-c", f"date -u +{_TS_FORMAT}; : > {LOG_PATH}"],
            container=CLIENT,
        )
        self.reset_at = parse_timestamp(out.strip().splitlines()[-1])
        logger.debug("Probe log reset at %s", self.reset_at.isoformat())

    def read_log(self) -> List[ProbeRecord]:
        out = self.orchestrator.exec(
            deployment_name(CLIENT),
            self.namespace,
            ["sh", "-c", f"cat {LOG_PATH} 2>/dev/null || true"],
            container=CLIENT,
        )
        return parse_log(out, since=self.reset_at)
