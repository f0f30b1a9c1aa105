#!/usr/bin/env python3
"""
Unit tests for k3s operations over SSH
"""

import base64
import json
import sys
import threading
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vps import ssh_ops
from vps.ssh_bridge import ExecResult
from vps.ssh_ops import LogSelector, ReleaseStatus
from xanthus.errors import RemoteCommandError, ValidationError

FREE_OUTPUT = """\
               total        used        free      shared  buff/cache   available
Mem:            3819        1210         412           3        2196        2326
Swap:              0           0           0
"""

DF_OUTPUT = """\
Filesystem     1048576-blocks  Used Available Capacity Mounted on
/dev/sda1               38314  6120     30568      17% /
"""


class FakeConnection:
    """Records commands and answers them from a list of (substring, result) rules."""

    def __init__(self, rules=None, host="203.0.113.7"):
        self.host = host
        self.rules = rules or []
        self.commands = []

    def execute(self, command, timeout=None):
        self.commands.append(command)
        for needle, (code, out, err) in self.rules:
            if needle in command:
                return ExecResult(command, code, out, err, code == 0, 1.0, self.host)
        return ExecResult(command, 0, "", "", True, 1.0, self.host)

    def written(self, path):
        """Decode the content written to ``path`` via write_remote_file."""
        for cmd in self.commands:
            if f"> {path}" in cmd:
                encoded = cmd.split("echo ", 1)[1].split(" ", 1)[0]
                return base64.b64decode(encoded).decode()
        return None

    def scratch_files(self, prefix):
        """Remote paths written under /tmp/xanthus-<prefix>-."""
        return [c.split("> ", 1)[1].split(" ", 1)[0] for c in self.commands
                if "base64 -d > /tmp/xanthus-" + prefix + "-" in c]


# ── Parsing ──────────────────────────────────────────────────────

class TestParsing:

    def test_parse_free(self):
        assert ssh_ops.parse_free(FREE_OUTPUT) == {"total": 3819, "used": 1210, "available": 2326}

    def test_parse_free_without_mem_line(self):
        with pytest.raises(ValueError):
            ssh_ops.parse_free("garbage")

    def test_parse_df(self):
        d = ssh_ops.parse_df(DF_OUTPUT)
        assert d["total"] == 38314
        assert d["used"] == 6120
        assert d["percent"] == 17.0

    def test_parse_journal(self):
        out = (
            "-- Logs begin at Mon 2026-01-01 --\n"
            "2026-01-02T10:00:00+0000 k3s-1 k3s[812]: Starting k3s\n"
            "continuation line\n"
        )
        lines = ssh_ops.parse_journal(out)
        assert len(lines) == 2
        assert lines[0].timestamp == "2026-01-02T10:00:00+0000"
        assert lines[0].source == "k3s[812]"
        assert lines[0].message == "Starting k3s"
        assert lines[1].message == "continuation line"

    def test_parse_kubectl_logs(self):
        out = "[pod/web-1/nginx] 2026-01-02T10:00:00Z GET / 200\n"
        lines = ssh_ops.parse_kubectl_logs(out)
        assert lines[0].source == "pod/web-1/nginx"
        assert lines[0].message == "GET / 200"


class TestLogSelector:

    def test_bare_name_is_unit(self):
        sel = LogSelector.parse("k3s")
        assert (sel.kind, sel.target) == ("unit", "k3s")

    def test_pods_with_namespace(self):
        sel = LogSelector.parse("pods:kube-system/k8s-app=kube-dns", lines=20)
        assert sel.kind == "pods"
        assert sel.namespace == "kube-system"
        assert sel.target == "k8s-app=kube-dns"
        assert sel.lines == 20

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            LogSelector.parse("files:/var/log")


class TestReleaseStatus:

    @pytest.mark.parametrize("helm,expected", [
        ("deployed", ReleaseStatus.DEPLOYED),
        ("failed", ReleaseStatus.FAILED),
        ("pending-install", ReleaseStatus.PENDING),
        ("superseded", ReleaseStatus.UNKNOWN),
    ])
    def test_from_helm(self, helm, expected):
        assert ReleaseStatus.from_helm(helm) == expected


# ── Health ───────────────────────────────────────────────────────

class TestHealthCheck:

    def _conn(self, status="READY", k3s="active"):
        return FakeConnection([
            ("cat /opt/xanthus/status", (0, status + "\n", "")),
            ("systemctl is-active k3s ssh", (0, f"{k3s}\nactive\nactive\n", "")),
            ("systemctl is-active k3s", (0, k3s, "")),
            ("uptime -p", (0, "up 2 hours", "")),
            ("free -m", (0, FREE_OUTPUT, "")),
            ("df -P -m /", (0, DF_OUTPUT, "")),
        ])

    def test_healthy_report(self):
        report = ssh_ops.health_check(self._conn())
        assert report.healthy is True
        assert report.memory_total_mb == 3819
        assert report.disk_used_percent == 17.0
        assert report.services == {"k3s": "active", "ssh": "active", "systemd-resolved": "active"}
        assert report.to_dict()["memory_used_percent"] == pytest.approx(31.7)

    def test_bootstrapping_is_unhealthy(self):
        report = ssh_ops.health_check(self._conn(status="INSTALLING_K3S", k3s="inactive"))
        assert report.healthy is False
        assert report.k3s_active is False

    def test_unparseable_memory_recorded(self):
        conn = self._conn()
        conn.rules.insert(0, ("free -m", (0, "???", "")))
        report = ssh_ops.health_check(conn)
        assert report.memory_total_mb == 0
        assert any(e.startswith("memory") for e in report.errors)

    def test_bootstrap_status_defaults_unknown(self):
        assert ssh_ops.bootstrap_status(FakeConnection()) == "UNKNOWN"


# ── Manifests, Helm, Logs ────────────────────────────────────────

class TestManifests:

    def test_dict_manifest_is_yaml(self):
        conn = FakeConnection()
        ssh_ops.deploy_manifest(conn, {"apiVersion": "v1", "kind": "Namespace",
                                       "metadata": {"name": "apps"}}, name="apps")
        [path] = conn.scratch_files("apps")
        assert "kind: Namespace" in conn.written(path)
        assert any(f"kubectl apply -f {path}" in c for c in conn.commands)
        assert conn.commands[-1] == f"rm -f {path}"

    def test_apply_failure_raises_and_cleans_up(self):
        conn = FakeConnection([("kubectl apply -f /tmp", (1, "", "error: invalid"))])
        with pytest.raises(RemoteCommandError) as exc:
            ssh_ops.deploy_manifest(conn, "kind: Pod\n", name="bad")
        assert exc.value.exit_code == 1
        assert "invalid" in exc.value.detail
        [path] = conn.scratch_files("bad")
        assert conn.commands[-1] == f"rm -f {path}"

    def test_empty_manifest(self):
        with pytest.raises(ValidationError):
            ssh_ops.deploy_manifest(FakeConnection(), "  \n")

    def test_name_injection_rejected(self):
        with pytest.raises(ValidationError):
            ssh_ops.deploy_manifest(FakeConnection(), "kind: Pod", name="x; rm -rf /")

    def test_concurrent_applies_use_separate_files(self):
        conn = FakeConnection()
        barrier = threading.Barrier(4)

        def apply(n):
            barrier.wait()
            ssh_ops.deploy_manifest(conn, f"kind: ConfigMap\nmetadata:\n  name: c{n}\n", name="apps")

        threads = [threading.Thread(target=apply, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        paths = conn.scratch_files("apps")
        assert len(set(paths)) == 4
        assert sorted(conn.written(p).split("name: ")[1].strip() for p in paths) == ["c0", "c1", "c2", "c3"]
        for p in paths:
            assert f"rm -f {p}" in conn.commands


class TestHelm:

    def test_install_reports_deployed(self):
        conn = FakeConnection([
            ("helm status web", (0, json.dumps({"info": {"status": "deployed"}}), "")),
        ])
        status = ssh_ops.install_or_upgrade_chart(
            conn, "web", "bitnami/nginx", values={"replicaCount": 2},
            repo={"name": "bitnami", "url": "https://charts.bitnami.com/bitnami"},
        )
        assert status == ReleaseStatus.DEPLOYED
        [path] = conn.scratch_files("values-web")
        assert "replicaCount: 2" in conn.written(path)
        assert f"rm -f {path}" in conn.commands
        assert any("helm repo add bitnami" in c for c in conn.commands)

    def test_failed_install_without_status_is_failed(self):
        conn = FakeConnection([
            ("helm upgrade --install", (1, "", "timed out")),
            ("helm status", (1, "", "release: not found")),
        ])
        assert ssh_ops.install_or_upgrade_chart(conn, "web", "bitnami/nginx") == ReleaseStatus.FAILED

    def test_uninstall_absent_release_is_success(self):
        conn = FakeConnection([("helm uninstall", (1, "", "Error: release: not found"))])
        ssh_ops.uninstall_chart(conn, "web")

    def test_uninstall_failure(self):
        conn = FakeConnection([("helm uninstall", (1, "", "cluster unreachable"))])
        with pytest.raises(RemoteCommandError):
            ssh_ops.uninstall_chart(conn, "web")

    def test_concurrent_installs_use_separate_values_files(self):
        conn = FakeConnection()
        threads = [
            threading.Thread(target=ssh_ops.install_or_upgrade_chart,
                             args=(conn, "web", "bitnami/nginx"), kwargs={"values": {"n": n}})
            for n in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        paths = conn.scratch_files("values-web")
        assert len(set(paths)) == 3
        assert sorted(conn.written(p) for p in paths) == ["n: 0\n", "n: 1\n", "n: 2\n"]

    @pytest.mark.parametrize("call", [ssh_ops.release_status, ssh_ops.uninstall_chart])
    def test_namespace_injection_rejected(self, call):
        conn = FakeConnection()
        with pytest.raises(ValidationError):
            call(conn, "web", namespace="default; reboot")
        assert conn.commands == []


class TestLogs:

    def test_unit_logs(self):
        conn = FakeConnection([
            ("journalctl -u k3s", (0, "2026-01-02T10:00:00+0000 k3s-1 k3s[1]: hi\n", "")),
        ])
        lines = ssh_ops.fetch_logs(conn, "unit:k3s", lines=5)
        assert lines[0].message == "hi"
        assert "-n 5" in conn.commands[0]

    def test_pod_logs(self):
        conn = FakeConnection([("kubectl logs", (0, "[pod/a/b] ts msg\n", ""))])
        lines = ssh_ops.fetch_logs(conn, "pods:app=web")
        assert lines[0].source == "pod/a/b"
        assert "-l app=web" in conn.commands[0]


class TestTLS:

    def test_push_tls_material(self):
        conn = FakeConnection()
        secret = ssh_ops.push_tls_material(conn, "example.com", "CHAIN\n", "KEY\n")
        assert secret == "example.com-tls"
        assert conn.written("/opt/xanthus/ssl/server.crt") == "CHAIN\n"
        assert conn.written("/opt/xanthus/ssl/server.key") == "KEY\n"
        assert any("create secret tls example.com-tls" in c for c in conn.commands)

    def test_key_written_private(self):
        conn = FakeConnection()
        ssh_ops.push_tls_material(conn, "example.com", "C", "K")
        key_cmd = next(c for c in conn.commands if "> /opt/xanthus/ssl/server.key" in c)
        assert "chmod 0600" in key_cmd
