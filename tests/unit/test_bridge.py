#!/usr/bin/env python3
"""
Unit tests for the WebSocket terminal bridge
"""

import json
import socket
import sys
import threading
import time
import pytest
from http import HTTPStatus
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from websockets.exceptions import ConnectionClosed

from terminal.bridge import (
    TerminalBridge, extract_token, parse_control_frame, session_id_from_path,
)
from terminal.sessions import SessionManager
from terminal.tokens import TokenService
from xanthus.errors import SSHError, ValidationError


class FakeWebSocket:
    """Serves queued client messages, then closes (or idles forever)."""

    def __init__(self, path, incoming=(), close_after=True):
        self.request = MagicMock()
        self.request.path = path
        self.incoming = list(incoming)
        self.close_after = close_after
        self.sent = []
        self.closed = None
        self._lock = threading.Lock()

    def recv(self, timeout=None):
        with self._lock:
            if self.incoming:
                return self.incoming.pop(0)
        if self.close_after:
            raise ConnectionClosed(None, None)
        time.sleep(0.01)
        raise TimeoutError()

    def send(self, message):
        self.sent.append(message)

    def close(self, code=1000, reason=""):
        if self.closed is None:
            self.closed = (code, reason)

    def frames(self):
        return [json.loads(m) for m in self.sent if isinstance(m, str)]


class FakeChannel:
    """PTY channel that emits queued output and records input."""

    def __init__(self, output=()):
        self.output = list(output)
        self.received = []
        self.resizes = []
        self.closed = False

    def settimeout(self, timeout):
        pass

    def recv(self, size):
        if self.output:
            return self.output.pop(0)
        time.sleep(0.01)
        raise socket.timeout()

    def sendall(self, data):
        self.received.append(data)

    def resize_pty(self, width, height):
        self.resizes.append((width, height))

    def close(self):
        self.closed = True


@pytest.fixture
def sessions():
    return SessionManager()


def make_bridge(sessions, channel=None, open_error=None, tokens=None):
    def open_channel(session):
        if open_error is not None:
            raise open_error
        return channel

    return TerminalBridge(sessions, open_channel, auth_tokens={"tok-alice": "alice", "tok-bob": "bob"},
                          tokens=tokens, port=0)


# ── Frames & Tokens ──────────────────────────────────────────────

class TestControlFrames:

    def test_data(self):
        assert parse_control_frame('{"type": "data", "payload": "ls\\n"}')["payload"] == "ls\n"

    def test_resize(self):
        frame = parse_control_frame('{"type": "resize", "cols": 120, "rows": 40}')
        assert (frame["cols"], frame["rows"]) == (120, 40)

    @pytest.mark.parametrize("text", [
        "not json",
        '{"type": "explode"}',
        '{"type": "resize", "cols": 120}',
        '{"type": "resize", "cols": 0, "rows": 40}',
        '{"type": "data"}',
        '["data"]',
    ])
    def test_invalid(self, text):
        with pytest.raises(ValidationError):
            parse_control_frame(text)


class TestTokens:

    def test_bearer_header(self):
        assert extract_token({"Authorization": "Bearer abc"}, "/ws/terminal/x") == "abc"

    def test_query_param(self):
        assert extract_token({}, "/ws/terminal/x?token=abc") == "abc"

    def test_cookie(self):
        assert extract_token({"Cookie": "theme=dark; cf_token=abc"}, "/ws/terminal/x") == "abc"

    def test_header_wins(self):
        assert extract_token({"Authorization": "Bearer h"}, "/ws/terminal/x?token=q") == "h"

    def test_none(self):
        assert extract_token({}, "/ws/terminal/x") is None

    def test_session_id_from_path(self):
        assert session_id_from_path("/ws/terminal/abc?token=t") == "abc"
        assert session_id_from_path("/ws/terminal/") is None
        assert session_id_from_path("/other/abc") is None


# ── Pre-upgrade Checks ───────────────────────────────────────────

class TestProcessRequest:

    def _request(self, path, headers=None):
        request = MagicMock()
        request.path = path
        request.headers = headers or {}
        return request

    def _status(self, bridge, path, headers=None):
        connection = MagicMock()
        result = bridge.process_request(connection, self._request(path, headers))
        if result is None:
            return None
        return connection.respond.call_args[0][0]

    def test_unknown_endpoint(self, sessions):
        assert self._status(make_bridge(sessions), "/metrics") == HTTPStatus.NOT_FOUND

    def test_missing_token(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        assert self._status(make_bridge(sessions), f"/ws/terminal/{s.id}") == HTTPStatus.UNAUTHORIZED

    def test_wrong_token(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        status = self._status(make_bridge(sessions), f"/ws/terminal/{s.id}?token=guess")
        assert status == HTTPStatus.UNAUTHORIZED

    def test_unknown_session(self, sessions):
        status = self._status(make_bridge(sessions), "/ws/terminal/nope?token=tok-alice")
        assert status == HTTPStatus.NOT_FOUND

    def test_other_users_session(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        status = self._status(make_bridge(sessions), f"/ws/terminal/{s.id}?token=tok-bob")
        assert status == HTTPStatus.FORBIDDEN

    def test_already_attached(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        sessions.claim(s.id)
        status = self._status(make_bridge(sessions), f"/ws/terminal/{s.id}?token=tok-alice")
        assert status == HTTPStatus.CONFLICT

    def test_owner_accepted(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        status = self._status(make_bridge(sessions), f"/ws/terminal/{s.id}",
                              {"Authorization": "Bearer tok-alice"})
        assert status is None


# ── Bridging ─────────────────────────────────────────────────────

class TestHandle:

    def test_client_input_reaches_pty(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        channel = FakeChannel()
        ws = FakeWebSocket(f"/ws/terminal/{s.id}", incoming=[
            json.dumps({"type": "data", "payload": "ls\n"}),
            json.dumps({"type": "resize", "cols": 120, "rows": 40}),
            b"\x03",
            "garbage",
        ])

        make_bridge(sessions, channel).handle(ws)

        assert ws.frames()[0] == {"type": "ready"}
        assert channel.received == [b"ls\n", b"\x03"]
        assert channel.resizes == [(120, 40)]
        assert any(f["type"] == "error" for f in ws.frames()[1:])
        assert channel.closed is True
        assert sessions.get(s.id) is None
        assert s.closed_reason == "disconnected"

    def test_pty_output_reaches_client(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        channel = FakeChannel(output=[b"welcome\r\n", b"$ ", b""])
        ws = FakeWebSocket(f"/ws/terminal/{s.id}", close_after=False)

        make_bridge(sessions, channel).handle(ws)

        assert ws.sent[0] == json.dumps({"type": "ready"})
        assert [m for m in ws.sent if isinstance(m, bytes)] == [b"welcome\r\n", b"$ "]
        assert sessions.get(s.id) is None

    def test_sweep_cancels_live_session(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        channel = FakeChannel()
        ws = FakeWebSocket(f"/ws/terminal/{s.id}", close_after=False)
        bridge = make_bridge(sessions, channel)

        worker = threading.Thread(target=bridge.handle, args=(ws,))
        worker.start()
        deadline = time.time() + 5
        while s.status != "running" and time.time() < deadline:
            time.sleep(0.01)

        sessions.close(s.id, "idle timeout")
        worker.join(5)

        assert not worker.is_alive()
        assert channel.closed is True
        assert s.closed_reason == "idle timeout"

    def test_second_attach_rejected(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        sessions.claim(s.id)
        ws = FakeWebSocket(f"/ws/terminal/{s.id}")

        make_bridge(sessions, FakeChannel()).handle(ws)

        assert ws.closed == (1008, "conflict")
        assert ws.frames()[0]["type"] == "error"

    def test_pty_open_failure(self, sessions):
        s = sessions.create("inst-1", "alice", "h")
        ws = FakeWebSocket(f"/ws/terminal/{s.id}")

        make_bridge(sessions, open_error=SSHError("refused")).handle(ws)

        assert ws.closed == (1011, "pty unavailable")
        assert ws.frames()[0] == {"type": "error", "message": "refused"}
        assert sessions.get(s.id) is None


class TestBridgeAuth:

    def test_authenticate(self, sessions):
        bridge = make_bridge(sessions)
        assert bridge.authenticate("tok-alice") == "alice"
        assert bridge.authenticate("tok-ali") is None
        assert bridge.authenticate(None) is None

    def test_signed_access_token(self, sessions):
        tokens = TokenService(b"s" * 32)
        bridge = make_bridge(sessions, tokens=tokens)
        access, refresh = tokens.issue_pair("carol")
        assert bridge.authenticate(access) == "carol"
        assert bridge.authenticate(refresh) is None
        assert bridge.authenticate("tok-bob") == "bob"

    def test_signed_token_attaches_own_session(self, sessions):
        tokens = TokenService(b"s" * 32)
        bridge = make_bridge(sessions, tokens=tokens)
        s = sessions.create("inst-1", "carol", "h")
        access, _ = tokens.issue_pair("carol")
        connection = MagicMock()
        request = MagicMock(path=f"/ws/terminal/{s.id}", headers={"Authorization": f"Bearer {access}"})
        assert bridge.process_request(connection, request) is None

    def test_stats(self, sessions):
        stats = make_bridge(sessions).get_stats()
        assert stats["listening"] is False
        assert stats["active"] == 0
