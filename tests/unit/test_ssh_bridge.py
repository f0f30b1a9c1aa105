#!/usr/bin/env python3
"""
Unit tests for the SSH execution service
"""

import socket
import sys
import pytest
from pathlib import Path
from unittest.mock import patch, MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

import paramiko

from vps.ssh_bridge import SSHConnection, SSHConnectionCache, parse_key_string
from xanthus.errors import AuthenticationError, OperationTimeoutError, SSHError
from xanthus.retry import Backoff


def _exec_client(stdout=b"", stderr=b"", exit_code=0):
    """A paramiko client whose exec_command yields the given output."""
    client = MagicMock()
    out = MagicMock()
    out.read.return_value = stdout
    out.channel.recv_exit_status.return_value = exit_code
    err = MagicMock()
    err.read.return_value = stderr
    client.exec_command.return_value = (MagicMock(), out, err)
    return client


@pytest.fixture(scope="module")
def pkey():
    return paramiko.RSAKey.generate(2048)


@pytest.fixture
def cache():
    with patch("vps.ssh_bridge.load_default_key", return_value=None):
        c = SSHConnectionCache(backoff=Backoff(initial=0, max_attempts=3))
    yield c
    c.close_all()


# ── Connection ───────────────────────────────────────────────────

class TestSSHConnection:

    def test_execute_success(self):
        conn = SSHConnection(_exec_client(b"hello\n"), "1.2.3.4", "root")
        result = conn.execute("echo hello")
        assert result.success is True
        assert result.stdout == "hello"
        assert result.host == "1.2.3.4"

    def test_nonzero_exit_is_a_result(self):
        conn = SSHConnection(_exec_client(b"", b"nope", exit_code=3), "1.2.3.4", "root")
        result = conn.execute("false")
        assert result.success is False
        assert result.exit_code == 3
        assert result.stderr == "nope"

    def test_start_failure_is_transient_ssh_error(self):
        client = MagicMock()
        client.exec_command.side_effect = paramiko.SSHException("channel refused")
        conn = SSHConnection(client, "1.2.3.4", "root")
        with pytest.raises(SSHError) as exc:
            conn.execute("uptime")
        assert exc.value.transient is True

    def test_drop_mid_command_is_not_transient(self):
        client = _exec_client()
        client.exec_command.return_value[1].read.side_effect = EOFError()
        conn = SSHConnection(client, "1.2.3.4", "root")
        with pytest.raises(SSHError) as exc:
            conn.execute("sleep 100")
        assert exc.value.transient is False

    def test_command_timeout(self):
        client = _exec_client()
        client.exec_command.return_value[1].read.side_effect = socket.timeout()
        conn = SSHConnection(client, "1.2.3.4", "root")
        with pytest.raises(OperationTimeoutError):
            conn.execute("sleep 100", timeout=1)

    def test_exec_log_newest_first(self):
        conn = SSHConnection(_exec_client(b"ok"), "1.2.3.4", "root")
        conn.execute("first")
        conn.execute("second")
        log = conn.get_exec_log()
        assert [e["command"] for e in log] == ["second", "first"]
        assert conn.get_exec_stats()["total_commands"] == 2

    def test_open_shell_requests_pty(self):
        client = MagicMock()
        chan = client.get_transport.return_value.open_session.return_value
        conn = SSHConnection(client, "1.2.3.4", "root")
        assert conn.open_shell("xterm", 120, 40) is chan
        chan.get_pty.assert_called_once_with(term="xterm", width=120, height=40)
        chan.invoke_shell.assert_called_once()

    def test_open_shell_failure(self):
        client = MagicMock()
        client.get_transport.return_value.open_session.side_effect = paramiko.SSHException("no")
        conn = SSHConnection(client, "1.2.3.4", "root")
        with pytest.raises(SSHError):
            conn.open_shell()

    def test_not_alive_without_transport(self):
        client = MagicMock()
        client.get_transport.return_value = None
        assert SSHConnection(client, "h", "root").is_alive() is False

    def test_close(self):
        client = MagicMock()
        conn = SSHConnection(client, "h", "root")
        conn.close()
        client.close.assert_called_once()
        assert conn.connected is False


# ── Key Loading ──────────────────────────────────────────────────

class TestKeys:

    def test_parse_generated_key(self):
        from certs.crypto import generate_ssh_keypair
        private_pem, _ = generate_ssh_keypair()
        assert isinstance(parse_key_string(private_pem), paramiko.RSAKey)

    def test_garbage_key(self):
        with pytest.raises(AuthenticationError):
            parse_key_string("not a key")


# ── Cache ────────────────────────────────────────────────────────

class TestConnectionCache:

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_reuses_live_connection(self, mock_client_cls, cache, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        first = cache.get_connection("1.2.3.4", key=pkey)
        second = cache.get_connection("1.2.3.4", key=pkey)
        assert first is second
        assert mock_client_cls.call_count == 1
        assert len(cache) == 1

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_connect_arguments(self, mock_client_cls, cache, pkey):
        client = MagicMock()
        mock_client_cls.return_value = client
        cache.get_connection("1.2.3.4", "deploy", key=pkey)
        kwargs = client.connect.call_args[1]
        assert kwargs["hostname"] == "1.2.3.4"
        assert kwargs["username"] == "deploy"
        assert kwargs["pkey"] is pkey
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_dead_connection_redialled(self, mock_client_cls, cache, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        first = cache.get_connection("1.2.3.4", key=pkey)
        first._client.get_transport.return_value = None
        second = cache.get_connection("1.2.3.4", key=pkey)
        assert second is not first
        assert mock_client_cls.call_count == 2

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_auth_failure_not_retried(self, mock_client_cls, cache, pkey):
        client = MagicMock()
        client.connect.side_effect = paramiko.AuthenticationException("denied")
        mock_client_cls.return_value = client
        with pytest.raises(AuthenticationError):
            cache.get_connection("1.2.3.4", key=pkey)
        assert client.connect.call_count == 1

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_transient_failure_retried(self, mock_client_cls, cache, pkey):
        client = MagicMock()
        client.connect.side_effect = [OSError("refused"), None]
        mock_client_cls.return_value = client
        conn = cache.get_connection("1.2.3.4", key=pkey)
        assert conn.host == "1.2.3.4"
        assert client.connect.call_count == 2

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_retries_bounded(self, mock_client_cls, cache, pkey):
        client = MagicMock()
        client.connect.side_effect = OSError("refused")
        mock_client_cls.return_value = client
        with pytest.raises(SSHError):
            cache.get_connection("1.2.3.4", key=pkey)
        assert client.connect.call_count == 3

    def test_no_key_is_authentication_error(self, cache):
        with pytest.raises(AuthenticationError):
            cache.get_connection("1.2.3.4")

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_run_invalidates_and_retries(self, mock_client_cls, cache, pkey):
        broken = MagicMock()
        broken.exec_command.side_effect = paramiko.SSHException("channel refused")
        healthy = _exec_client(b"up 3 days")
        mock_client_cls.side_effect = [broken, healthy]

        result = cache.run("1.2.3.4", "uptime -p", key=pkey)

        assert result.stdout == "up 3 days"
        broken.close.assert_called()

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_cleanup_stale(self, mock_client_cls, cache, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        conn = cache.get_connection("1.2.3.4", key=pkey)
        assert cache.cleanup_stale(max_idle=60, now=conn.last_used + 30) == 0
        assert cache.cleanup_stale(max_idle=60, now=conn.last_used + 61) == 1
        assert len(cache) == 0

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_cleanup_keeps_connection_with_live_pty(self, mock_client_cls, cache, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        conn = cache.get_connection("1.2.3.4", key=pkey)
        chan = conn.open_shell()
        chan.closed = False

        # Terminal traffic never goes through execute(), so last_used ages.
        assert cache.cleanup_stale(max_idle=600, now=conn.last_used + 660) == 0
        assert len(cache) == 1

        chan.closed = True
        assert cache.cleanup_stale(max_idle=600, now=conn.last_used + 660) == 1

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_cache_key_includes_port(self, mock_client_cls, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        with patch("vps.ssh_bridge.load_default_key", return_value=None):
            cache = SSHConnectionCache(port=2222, backoff=Backoff(initial=0, max_attempts=1))
        cache.get_connection("1.2.3.4", key=pkey)
        assert cache.get_stats()["hosts"] == ["root@1.2.3.4:2222"]
        assert cache.invalidate("1.2.3.4") is True
        cache.close_all()

    @patch("vps.ssh_bridge.paramiko.SSHClient")
    def test_invalidate_host(self, mock_client_cls, cache, pkey):
        mock_client_cls.side_effect = lambda: MagicMock()
        cache.get_connection("1.2.3.4", "root", key=pkey)
        cache.get_connection("1.2.3.4", "deploy", key=pkey)
        cache.get_connection("5.6.7.8", "root", key=pkey)
        assert cache.invalidate_host("1.2.3.4") == 2
        assert cache.get_stats()["hosts"] == ["root@5.6.7.8:22"]

    def test_reaper_start_stop(self, cache):
        cache.start_reaper(interval=60)
        assert cache._reaper.is_alive()
        cache.stop_reaper()
        assert cache._reaper is None
