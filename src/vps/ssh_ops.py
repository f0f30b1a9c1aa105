#!/usr/bin/env python3
"""
K3s Operations over SSH — the higher-level half of the execution service.

Every operation takes an SSHConnection (see ssh_bridge) and turns raw
command output into structured results:

- health_check(conn) -> HealthReport
- bootstrap_status(conn) -> str
- deploy_manifest(conn, manifest)
- install_or_upgrade_chart(conn, release, chart, values) -> ReleaseStatus
- release_status(conn, release) -> ReleaseStatus
- uninstall_chart(conn, release)
- fetch_logs(conn, selector) -> list[LogLine]
- push_tls_material(conn, domain, chain, key)

File contents are shipped base64-encoded so no payload can terminate a
heredoc or break shell quoting.
"""

import base64
import json
import logging
import re
import secrets
import shlex
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, List, Union

import yaml

from xanthus.errors import RemoteCommandError, ValidationError

from .bootstrap import KUBECONFIG, STATUS_FILE
from .ssh_bridge import ExecResult, SSHConnection

logger = logging.getLogger(__name__)

KUBE_ENV = f"export KUBECONFIG={KUBECONFIG}; "
SSL_DIR = "/opt/xanthus/ssl"
HEALTH_SERVICES = ["k3s", "ssh", "systemd-resolved"]

_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


# ── Data Models ──────────────────────────────────────────────────

class ReleaseStatus(Enum):
    DEPLOYED = "deployed"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"

    @classmethod
    def from_helm(cls, status: str) -> "ReleaseStatus":
        status = (status or "").lower()
        if status == "deployed":
            return cls.DEPLOYED
        if status == "failed":
            return cls.FAILED
        if status.startswith("pending") or status == "uninstalling":
            return cls.PENDING
        return cls.UNKNOWN


@dataclass
class HealthReport:
    """Structured health of one instance."""
    host: str
    bootstrap_status: str = "UNKNOWN"
    k3s_active: bool = False
    uptime: str = ""
    memory_total_mb: int = 0
    memory_used_mb: int = 0
    memory_available_mb: int = 0
    disk_total_mb: int = 0
    disk_used_mb: int = 0
    disk_available_mb: int = 0
    disk_used_percent: float = 0.0
    services: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    checked_at: float = field(default_factory=time.time)

    @property
    def memory_used_percent(self) -> float:
        if not self.memory_total_mb:
            return 0.0
        return round(100.0 * self.memory_used_mb / self.memory_total_mb, 1)

    @property
    def healthy(self) -> bool:
        return (
            self.bootstrap_status == "READY"
            and self.k3s_active
            and all(state == "active" for state in self.services.values())
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["memory_used_percent"] = self.memory_used_percent
        d["healthy"] = self.healthy
        return d


@dataclass
class LogSelector:
    """Which logs to fetch: a systemd unit or pods matching a label selector."""
    kind: str = "unit"           # unit | pods
    target: str = "k3s"
    namespace: str = "default"
    lines: int = 100

    @classmethod
    def parse(cls, selector: Union[str, "LogSelector"], lines: int = 100) -> "LogSelector":
        """``unit:k3s``, ``pods:app=web`` or ``pods:default/app=web``; bare names are units."""
        if isinstance(selector, LogSelector):
            return selector
        kind, _, target = selector.partition(":")
        if not target:
            kind, target = "unit", kind
        namespace = "default"
        if kind == "pods" and "/" in target:
            namespace, target = target.split("/", 1)
        if kind not in ("unit", "pods") or not target:
            raise ValidationError(f"Invalid log selector: {selector!r}")
        return cls(kind=kind, target=target, namespace=namespace, lines=lines)


@dataclass
class LogLine:
    timestamp: str
    source: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Helpers ──────────────────────────────────────────────────────

def _require(result: ExecResult, what: str) -> ExecResult:
    if not result.success:
        raise RemoteCommandError(
            f"{what} failed on {result.host} (exit {result.exit_code})",
            exit_code=result.exit_code,
            detail=(result.stderr or result.stdout)[:2000],
        )
    return result


def _check_name(value: str, what: str) -> str:
    if not value or not _NAME_RE.match(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def _scratch_path(label: str) -> str:
    """Unique /tmp path so concurrent applies on one host never share a file."""
    return f"/tmp/xanthus-{label}-{secrets.token_hex(4)}.yaml"


def write_remote_file(conn: SSHConnection, path: str, content: str, mode: str = "0644"):
    """Write ``content`` to ``path`` on the remote host."""
    encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
    qpath = shlex.quote(path)
    _require(
        conn.execute(
            f"mkdir -p $(dirname {qpath}) && echo {encoded} | base64 -d > {qpath} "
            f"&& chmod {mode} {qpath}"
        ),
        f"write {path}",
    )


# ── Health ───────────────────────────────────────────────────────

def bootstrap_status(conn: SSHConnection) -> str:
    """Current bootstrap stage written by the cloud-init setup script."""
    result = conn.execute(f"cat {STATUS_FILE} 2>/dev/null || echo UNKNOWN")
    return (result.stdout.strip().splitlines() or ["UNKNOWN"])[-1].strip()


def parse_free(output: str) -> Dict[str, int]:
    """Parse ``free -m`` output."""
    for line in output.splitlines():
        parts = line.split()
        if parts and parts[0] == "Mem:" and len(parts) >= 3:
            total, used = int(parts[1]), int(parts[2])
            available = int(parts[6]) if len(parts) >= 7 else total - used
            return {"total": total, "used": used, "available": available}
    raise ValueError("no Mem: line in free output")


def parse_df(output: str) -> Dict[str, Any]:
    """Parse ``df -P -m /`` output."""
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("df output has no data line")
    parts = lines[-1].split()
    return {
        "total": int(parts[1]),
        "used": int(parts[2]),
        "available": int(parts[3]),
        "percent": float(parts[4].rstrip("%")),
    }


def health_check(conn: SSHConnection) -> HealthReport:
    """Aggregate bootstrap, k3s, memory, disk and service state into one report."""
    report = HealthReport(host=conn.host)
    report.bootstrap_status = bootstrap_status(conn)
    report.k3s_active = conn.execute("systemctl is-active k3s").stdout.strip() == "active"
    report.uptime = conn.execute("uptime -p").stdout.strip()

    mem = conn.execute("free -m")
    try:
        m = parse_free(mem.stdout)
        report.memory_total_mb = m["total"]
        report.memory_used_mb = m["used"]
        report.memory_available_mb = m["available"]
    except (ValueError, IndexError) as e:
        report.errors.append(f"memory: {e}")

    disk = conn.execute("df -P -m /")
    try:
        d = parse_df(disk.stdout)
        report.disk_total_mb = d["total"]
        report.disk_used_mb = d["used"]
        report.disk_available_mb = d["available"]
        report.disk_used_percent = d["percent"]
    except (ValueError, IndexError) as e:
        report.errors.append(f"disk: {e}")

    # is-active prints one state per unit, in order, and exits non-zero
    # if any unit is inactive.
    states = conn.execute(f"systemctl is-active {' '.join(HEALTH_SERVICES)}").stdout.split()
    for i, service in enumerate(HEALTH_SERVICES):
        report.services[service] = states[i] if i < len(states) else "unknown"

    logger.info(
        f"Health {conn.host}: status={report.bootstrap_status} k3s={report.k3s_active} "
        f"mem={report.memory_used_percent}% disk={report.disk_used_percent}%"
    )
    return report


# ── Manifests ────────────────────────────────────────────────────

def deploy_manifest(conn: SSHConnection, manifest: Union[str, Dict[str, Any], List[Dict[str, Any]]],
                    name: str = "manifest", namespace: str = None) -> ExecResult:
    """``kubectl apply`` a manifest (YAML text or parsed documents)."""
    _check_name(name, "manifest name")
    if isinstance(manifest, dict):
        manifest = yaml.safe_dump(manifest, sort_keys=False)
    elif isinstance(manifest, list):
        manifest = yaml.safe_dump_all(manifest, sort_keys=False)
    if not manifest.strip():
        raise ValidationError("Manifest is empty")

    path = _scratch_path(name)
    write_remote_file(conn, path, manifest, mode="0600")
    ns = f" -n {shlex.quote(namespace)}" if namespace else ""
    try:
        result = _require(
            conn.execute(f"{KUBE_ENV}kubectl apply -f {path}{ns}", timeout=120),
            f"kubectl apply {name}",
        )
    finally:
        conn.execute(f"rm -f {path}")
    logger.info(f"Applied manifest {name} on {conn.host}")
    return result


# ── Helm ─────────────────────────────────────────────────────────

def ensure_namespace(conn: SSHConnection, namespace: str):
    _check_name(namespace, "namespace")
    _require(
        conn.execute(
            f"{KUBE_ENV}kubectl create namespace {namespace} --dry-run=client -o yaml "
            f"| kubectl apply -f -"
        ),
        f"create namespace {namespace}",
    )


def add_helm_repo(conn: SSHConnection, name: str, url: str):
    _check_name(name, "repository name")
    _require(
        conn.execute(
            f"{KUBE_ENV}helm repo add {name} {shlex.quote(url)} --force-update "
            f"&& helm repo update {name}",
            timeout=120,
        ),
        f"helm repo add {name}",
    )


def release_status(conn: SSHConnection, release: str, namespace: str = "default") -> ReleaseStatus:
    """Map ``helm status -o json`` onto ReleaseStatus."""
    _check_name(release, "release name")
    _check_name(namespace, "namespace")
    result = conn.execute(f"{KUBE_ENV}helm status {release} --namespace {namespace} -o json")
    if not result.success:
        return ReleaseStatus.UNKNOWN
    try:
        info = json.loads(result.stdout).get("info", {})
    except ValueError:
        return ReleaseStatus.UNKNOWN
    return ReleaseStatus.from_helm(info.get("status", ""))


def install_or_upgrade_chart(
    conn: SSHConnection, release: str, chart: str,
    values: Dict[str, Any] = None, namespace: str = "default",
    version: str = None, repo: Optional[Dict[str, str]] = None,
    timeout: int = 600,
) -> ReleaseStatus:
    """
    ``helm upgrade --install`` a chart and report the resulting status.

    A helm failure is not raised: the returned status is FAILED (or
    whatever helm recorded), leaving callers to decide significance.
    """
    _check_name(release, "release name")
    ensure_namespace(conn, namespace)
    if repo:
        add_helm_repo(conn, repo["name"], repo["url"])

    values_path = _scratch_path(f"values-{release}")
    write_remote_file(conn, values_path, yaml.safe_dump(values or {}, sort_keys=False), mode="0600")

    cmd = (
        f"{KUBE_ENV}helm upgrade --install {release} {shlex.quote(chart)} "
        f"--namespace {namespace} --create-namespace -f {values_path} "
        f"--wait --timeout {timeout}s"
    )
    if version:
        cmd += f" --version {shlex.quote(version)}"
    try:
        result = conn.execute(cmd, timeout=timeout + 30)
    finally:
        conn.execute(f"rm -f {values_path}")

    status = release_status(conn, release, namespace)
    if not result.success and status == ReleaseStatus.UNKNOWN:
        status = ReleaseStatus.FAILED
    logger.log(
        logging.INFO if status == ReleaseStatus.DEPLOYED else logging.WARNING,
        f"Helm release {release} ({chart}) on {conn.host}: {status.value}",
    )
    return status


def uninstall_chart(conn: SSHConnection, release: str, namespace: str = "default"):
    """Uninstall a release. An already-absent release is success."""
    _check_name(release, "release name")
    _check_name(namespace, "namespace")
    result = conn.execute(f"{KUBE_ENV}helm uninstall {release} --namespace {namespace}", timeout=300)
    if not result.success and "not found" not in (result.stderr + result.stdout).lower():
        _require(result, f"helm uninstall {release}")
    logger.info(f"Helm release {release} removed from {conn.host}")


# ── Logs ─────────────────────────────────────────────────────────

_JOURNAL_RE = re.compile(r"^(\S+)\s+\S+\s+([^:]+):\s?(.*)$")
_KUBECTL_RE = re.compile(r"^\[([^\]]+)\]\s+(\S+)\s?(.*)$")


def parse_journal(output: str) -> List[LogLine]:
    """Parse ``journalctl -o short-iso`` lines: ``<ts> <host> <unit[pid]>: <msg>``."""
    lines = []
    for raw in output.splitlines():
        if not raw.strip() or raw.startswith("-- "):
            continue
        m = _JOURNAL_RE.match(raw)
        if m:
            lines.append(LogLine(timestamp=m.group(1), source=m.group(2), message=m.group(3)))
        else:
            lines.append(LogLine(timestamp="", source="", message=raw))
    return lines


def parse_kubectl_logs(output: str) -> List[LogLine]:
    """Parse ``kubectl logs --prefix --timestamps`` lines: ``[pod/x/c] <ts> <msg>``."""
    lines = []
    for raw in output.splitlines():
        if not raw.strip():
            continue
        m = _KUBECTL_RE.match(raw)
        if m:
            lines.append(LogLine(timestamp=m.group(2), source=m.group(1), message=m.group(3)))
        else:
            lines.append(LogLine(timestamp="", source="", message=raw))
    return lines


def fetch_logs(conn: SSHConnection, selector: Union[str, LogSelector], lines: int = 100) -> List[LogLine]:
    """Recent log lines for a systemd unit or a set of pods."""
    sel = LogSelector.parse(selector, lines)
    if sel.kind == "unit":
        _check_name(sel.target, "unit name")
        result = _require(
            conn.execute(f"journalctl -u {sel.target} -n {int(sel.lines)} --no-pager -o short-iso"),
            f"journalctl {sel.target}",
        )
        return parse_journal(result.stdout)

    _check_name(sel.namespace, "namespace")
    result = _require(
        conn.execute(
            f"{KUBE_ENV}kubectl logs -l {shlex.quote(sel.target)} -n {sel.namespace} "
            f"--tail {int(sel.lines)} --timestamps --prefix --all-containers"
        ),
        f"kubectl logs {sel.target}",
    )
    return parse_kubectl_logs(result.stdout)


# ── TLS ──────────────────────────────────────────────────────────

def push_tls_material(conn: SSHConnection, domain: str, certificate: str, private_key: str,
                      namespace: str = "default") -> str:
    """
    Install a certificate chain and key for local TLS termination.

    Writes /opt/xanthus/ssl/server.crt and server.key and creates (or
    replaces) the ``<domain>-tls`` secret. Returns the secret name.
    """
    _check_name(domain, "domain")
    _check_name(namespace, "namespace")
    cert_path = f"{SSL_DIR}/server.crt"
    key_path = f"{SSL_DIR}/server.key"
    write_remote_file(conn, cert_path, certificate, mode="0644")
    write_remote_file(conn, key_path, private_key, mode="0600")

    secret = f"{domain}-tls"
    _require(
        conn.execute(
            f"{KUBE_ENV}kubectl create secret tls {secret} --cert={cert_path} --key={key_path} "
            f"-n {namespace} --dry-run=client -o yaml | kubectl apply -f -"
        ),
        f"create TLS secret {secret}",
    )
    logger.info(f"TLS material for {domain} installed on {conn.host}")
    return secret
