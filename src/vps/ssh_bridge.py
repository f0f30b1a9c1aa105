#!/usr/bin/env python3
"""
SSH Execution Service — cached, health-checked shell connections

Keeps at most one live paramiko connection per ``user@host`` and hands it
to every caller: lifecycle bootstrap, ad-hoc operations (logs, manifests,
charts) and the terminal bridge. Commands sharing a connection are
queued on a per-connection lock so output never interleaves.

Security model:
- Key-based auth only (no passwords stored)
- Private key loaded from file, string or env var
- Command audit logging (every exec is recorded)
- Timeout on all commands (no hanging connections)

Failure model:
- Authentication failure is fatal and never retried
- Transient network failure is retried with bounded backoff
- A non-zero exit code is a successful call whose result says so

Usage:
    cache = SSHConnectionCache(key_path="~/.ssh/id_rsa")
    result = cache.run("203.0.113.7", "uptime")
    conn = cache.get_connection("203.0.113.7", "root")
    chan = conn.open_shell("xterm-256color", 80, 24)
    cache.close_all()
"""

import io
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Union

import paramiko

from xanthus.errors import AuthenticationError, OperationTimeoutError, SSHError
from xanthus.retry import Backoff, retry_call

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Result of a remote command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    success: bool
    duration_ms: float
    host: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Key Loading ──────────────────────────────────────────────────

_KEY_CLASSES = [paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey]


def read_key_file(path: str) -> paramiko.PKey:
    """Read a private key from file, trying RSA, Ed25519 then ECDSA."""
    path = os.path.expanduser(path)
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(path)
        except (paramiko.SSHException, ValueError):
            continue
    raise AuthenticationError(f"Could not parse SSH key: {path}")


def parse_key_string(content: str) -> paramiko.PKey:
    """Parse a private key from string content."""
    key_file = io.StringIO(content)
    for key_class in _KEY_CLASSES:
        try:
            key_file.seek(0)
            return key_class.from_private_key(key_file)
        except (paramiko.SSHException, ValueError):
            continue
    raise AuthenticationError("Could not parse SSH key from string")


def load_default_key(key_path: str = None, key_content: str = None) -> Optional[paramiko.PKey]:
    """
    Resolve the default private key.

    Priority:
    1. Explicit key_path / key_content
    2. SSH_PRIVATE_KEY_PATH env var
    3. SSH_PRIVATE_KEY env var (key content as string)
    4. ~/.ssh/id_rsa or ~/.ssh/id_ed25519
    """
    if key_path and os.path.isfile(os.path.expanduser(key_path)):
        return read_key_file(key_path)
    if key_content:
        return parse_key_string(key_content)

    env_path = os.environ.get("SSH_PRIVATE_KEY_PATH", "")
    if env_path and os.path.isfile(env_path):
        return read_key_file(env_path)

    content = os.environ.get("SSH_PRIVATE_KEY", "")
    if content:
        return parse_key_string(content)

    for default in ["~/.ssh/id_rsa", "~/.ssh/id_ed25519"]:
        expanded = os.path.expanduser(default)
        if os.path.isfile(expanded):
            return read_key_file(expanded)

    logger.warning("No default SSH private key found")
    return None


# ── Connection ───────────────────────────────────────────────────

class SSHConnection:
    """One authenticated session to a ``user@host:port``."""

    DEFAULT_TIMEOUT = 30
    EXEC_LOG_LIMIT = 200

    def __init__(self, client: paramiko.SSHClient, host: str, username: str,
                 port: int = 22, timeout: int = None):
        self._client = client
        self.host = host
        self.username = username
        self.port = port
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.created_at = time.time()
        self.last_used = self.created_at
        self._cmd_lock = threading.Lock()
        self._exec_log: List[ExecResult] = []
        self._shells: List[paramiko.Channel] = []
        self._shell_lock = threading.Lock()

    @property
    def key(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def open_shells(self) -> int:
        """PTY channels opened on this connection that are still open."""
        with self._shell_lock:
            self._shells = [chan for chan in self._shells if not chan.closed]
            return len(self._shells)

    @property
    def connected(self) -> bool:
        """Check if the transport is up."""
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def is_alive(self) -> bool:
        """Transport active and able to open a session."""
        if not self.connected:
            return False
        try:
            session = self._client.get_transport().open_session(timeout=5)
            session.close()
            return True
        except (paramiko.SSHException, EOFError, OSError) as e:
            logger.info(f"SSH health check failed for {self.key}: {e}")
            return False

    def touch(self):
        self.last_used = time.time()

    # ── Command Execution ────────────────────────────────────────

    def execute(self, command: str, timeout: int = None) -> ExecResult:
        """
        Execute a command. Callers on the same connection are queued.

        Raises SSHError(transient=True) if the command could not be
        started, SSHError(transient=False) if the connection dropped
        while it ran, OperationTimeoutError if it outlived ``timeout``.
        """
        cmd_timeout = timeout or self.timeout
        with self._cmd_lock:
            self.touch()
            start = time.time()
            try:
                _, stdout_ch, stderr_ch = self._client.exec_command(command, timeout=cmd_timeout)
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise SSHError(f"Could not start command on {self.host}", detail=str(e)) from e

            try:
                stdout = stdout_ch.read().decode("utf-8", errors="replace").strip()
                stderr = stderr_ch.read().decode("utf-8", errors="replace").strip()
                exit_code = stdout_ch.channel.recv_exit_status()
            except socket.timeout as e:
                raise OperationTimeoutError(
                    f"Command timed out after {cmd_timeout}s on {self.host}",
                    detail=command[:200],
                ) from e
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise SSHError(
                    f"Connection to {self.host} lost during command",
                    detail=str(e), transient=False,
                ) from e

            duration = (time.time() - start) * 1000
            result = ExecResult(
                command=command,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                success=exit_code == 0,
                duration_ms=round(duration, 1),
                host=self.host,
            )
            self._exec_log.append(result)
            del self._exec_log[:-self.EXEC_LOG_LIMIT]

        level = logging.INFO if result.success else logging.WARNING
        logger.log(
            level,
            f"[SSH] {command[:80]} -> exit={result.exit_code} "
            f"({result.duration_ms:.0f}ms)"
        )
        return result

    def open_shell(self, term: str = "xterm-256color", cols: int = 80, rows: int = 24) -> paramiko.Channel:
        """Open an interactive PTY channel on this connection."""
        self.touch()
        try:
            chan = self._client.get_transport().open_session(timeout=self.timeout)
            chan.get_pty(term=term, width=cols, height=rows)
            chan.invoke_shell()
        except (paramiko.SSHException, EOFError, OSError, AttributeError) as e:
            raise SSHError(f"Could not open shell on {self.host}", detail=str(e)) from e
        with self._shell_lock:
            self._shells.append(chan)
        logger.info(f"PTY opened on {self.key} ({term} {cols}x{rows})")
        return chan

    def close(self):
        """Close the SSH connection."""
        if self._client:
            try:
                self._client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"Error closing {self.key}: {e}")
            self._client = None
            logger.info(f"SSH connection closed: {self.key}")

    # ── Audit ────────────────────────────────────────────────────

    def get_exec_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Get recent command execution log."""
        entries = self._exec_log[-limit:]
        return [e.to_dict() for e in reversed(entries)]

    def get_exec_stats(self) -> Dict[str, Any]:
        """Get execution statistics."""
        total = len(self._exec_log)
        successes = sum(1 for e in self._exec_log if e.success)
        avg_duration = (
            sum(e.duration_ms for e in self._exec_log) / total
            if total > 0 else 0
        )
        return {
            "total_commands": total,
            "successes": successes,
            "failures": total - successes,
            "avg_duration_ms": round(avg_duration, 1),
            "connected": self.connected,
            "host": self.host,
            "idle_sec": round(time.time() - self.last_used, 1),
        }

    def __repr__(self) -> str:
        status = "connected" if self.connected else "disconnected"
        return f"SSHConnection({self.username}@{self.host}:{self.port}, {status})"


# ── Connection Cache ─────────────────────────────────────────────

class SSHConnectionCache:
    """
    At most one live connection per ``user@host:port``.

    get_connection() returns the cached connection if it passes a
    health check, otherwise tears it down and dials a new one. Dialling
    retries transient network errors with backoff; authentication
    errors surface immediately.
    """

    DEFAULT_PORT = 22
    DEFAULT_TIMEOUT = 30
    DEFAULT_ATTEMPTS = 3
    STALE_AFTER_SEC = 600
    CLEANUP_INTERVAL_SEC = 300

    def __init__(
        self,
        username: str = "root",
        port: int = None,
        key_path: str = None,
        key_content: str = None,
        connect_timeout: int = None,
        connect_attempts: int = None,
        stale_after_sec: int = None,
        backoff: Backoff = None,
    ):
        self.username = username or os.environ.get("XANTHUS_SSH_USER", "root")
        self.port = port or self.DEFAULT_PORT
        self.connect_timeout = connect_timeout or self.DEFAULT_TIMEOUT
        self.connect_attempts = connect_attempts or self.DEFAULT_ATTEMPTS
        self.stale_after_sec = stale_after_sec or self.STALE_AFTER_SEC
        self.backoff = backoff or Backoff(initial=1.0, max_delay=8.0, max_attempts=self.connect_attempts)

        self._default_key = load_default_key(key_path, key_content)
        self._connections: Dict[str, SSHConnection] = {}
        self._dial_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None

        logger.info(
            f"SSHConnectionCache initialized (user={self.username}, port={self.port}, "
            f"key={'loaded' if self._default_key else 'none'})"
        )

    @staticmethod
    def _cache_key(host: str, username: str, port: int) -> str:
        return f"{username}@{host}:{port}"

    def _dial_lock(self, cache_key: str) -> threading.Lock:
        with self._lock:
            return self._dial_locks.setdefault(cache_key, threading.Lock())

    def _resolve_key(self, key: Union[str, paramiko.PKey, None]) -> paramiko.PKey:
        if isinstance(key, paramiko.PKey):
            return key
        if isinstance(key, str) and key.strip():
            return parse_key_string(key)
        if self._default_key is None:
            raise AuthenticationError("No SSH key available for authentication")
        return self._default_key

    def _connect(self, host: str, username: str, pkey: paramiko.PKey) -> SSHConnection:
        """Dial one connection. Raises AuthenticationError or SSHError."""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=username,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            logger.error(f"SSH auth failed for {username}@{host}")
            raise AuthenticationError(f"SSH authentication failed for {username}@{host}", detail=str(e)) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            client.close()
            logger.warning(f"SSH connection to {host} failed: {e}")
            raise SSHError(f"SSH connection to {host} failed", detail=str(e)) from e

        logger.info(f"SSH connected to {username}@{host}:{self.port}")
        return SSHConnection(client, host, username, self.port, self.connect_timeout)

    def get_connection(self, host: str, username: str = None,
                       key: Union[str, paramiko.PKey, None] = None) -> SSHConnection:
        """Return a healthy cached connection, dialling one if needed."""
        username = username or self.username
        cache_key = self._cache_key(host, username, self.port)

        with self._dial_lock(cache_key):
            with self._lock:
                existing = self._connections.get(cache_key)
            if existing is not None:
                if existing.is_alive():
                    existing.touch()
                    return existing
                logger.info(f"Dropping dead SSH connection {cache_key}")
                existing.close()
                with self._lock:
                    self._connections.pop(cache_key, None)

            pkey = self._resolve_key(key)
            conn = retry_call(
                lambda: self._connect(host, username, pkey),
                self.backoff,
                retry_if=lambda e: isinstance(e, SSHError) and e.transient,
                describe=f"ssh connect {cache_key}",
            )
            with self._lock:
                self._connections[cache_key] = conn
            return conn

    def run(self, host: str, command: str, username: str = None,
            key: Union[str, paramiko.PKey, None] = None, timeout: int = None) -> ExecResult:
        """
        Execute ``command`` on ``host`` through the cache.

        If the command could not even be started (channel refused on a
        connection that died between health check and use), the
        connection is invalidated and the command retried.
        """
        def attempt() -> ExecResult:
            conn = self.get_connection(host, username, key)
            try:
                return conn.execute(command, timeout=timeout)
            except SSHError:
                self.invalidate(host, username)
                raise

        return retry_call(
            attempt,
            self.backoff,
            retry_if=lambda e: isinstance(e, SSHError) and e.transient,
            describe=f"ssh exec on {host}",
        )

    def invalidate(self, host: str, username: str = None) -> bool:
        """Close and forget the connection for ``username@host``."""
        cache_key = self._cache_key(host, username or self.username, self.port)
        with self._lock:
            conn = self._connections.pop(cache_key, None)
        if conn is None:
            return False
        conn.close()
        return True

    def invalidate_host(self, host: str) -> int:
        """Close every cached connection to ``host`` regardless of user."""
        with self._lock:
            keys = [k for k, c in self._connections.items() if c.host == host]
            conns = [self._connections.pop(k) for k in keys]
        for conn in conns:
            conn.close()
        return len(conns)

    def cleanup_stale(self, max_idle: float = None, now: float = None) -> int:
        """
        Close connections unused for longer than ``max_idle`` seconds.

        Connections carrying an open PTY are never stale: terminal
        traffic does not go through execute(), and idle terminals are
        the session sweep's business.
        """
        max_idle = self.stale_after_sec if max_idle is None else max_idle
        now = now or time.time()
        with self._lock:
            stale = [
                k for k, c in self._connections.items()
                if now - c.last_used > max_idle and c.open_shells == 0
            ]
            conns = [self._connections.pop(k) for k in stale]
        for conn in conns:
            conn.close()
        if conns:
            logger.info(f"Cleaned up {len(conns)} stale SSH connections")
        return len(conns)

    def close_all(self):
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
        for conn in conns:
            conn.close()

    # ── Background Reaper ────────────────────────────────────────

    def start_reaper(self, interval: float = None):
        if self._reaper and self._reaper.is_alive():
            return
        interval = interval or self.CLEANUP_INTERVAL_SEC
        self._stop.clear()

        def loop():
            while not self._stop.wait(interval):
                self.cleanup_stale()

        self._reaper = threading.Thread(target=loop, name="ssh-reaper", daemon=True)
        self._reaper.start()

    def stop_reaper(self):
        self._stop.set()
        if self._reaper:
            self._reaper.join(timeout=5)
            self._reaper = None

    # ── Stats ────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            conns = list(self._connections.values())
        return {
            "connections": len(conns),
            "hosts": sorted(c.key for c in conns),
            "commands": sum(c.get_exec_stats()["total_commands"] for c in conns),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop_reaper()
        self.close_all()
        return False
