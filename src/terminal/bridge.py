#!/usr/bin/env python3
"""
Terminal Bridge — WebSocket to SSH PTY on a single public port.

Endpoint: ``/ws/terminal/<session id>``. The token may arrive as an
``Authorization: Bearer`` header, a ``token`` query parameter or a
``cf_token`` cookie. Static operator tokens and signed access tokens
(terminal.tokens) are both accepted. Authentication and session
ownership are checked before the upgrade; failures are plain HTTP
401 / 403 / 404 / 409.

After the upgrade the bridge opens a PTY on the instance's cached SSH
connection, sends ``{"type": "ready"}`` and starts two copy threads:

    client -> PTY   text frames are JSON control frames (data, resize, ready),
                    binary frames are raw keystrokes
    PTY -> client   binary frames

Either side closing sets the session's cancel event, which stops both
threads and closes the PTY channel.

Usage:
    bridge = TerminalBridge(sessions, open_channel, auth_tokens={"tok": "alice"},
                            tokens=TokenService(secret))
    bridge.start()        # background thread
    ...
    bridge.stop()
"""

import hmac
import json
import logging
import socket
import threading
from http import HTTPStatus
from http.cookies import CookieError, SimpleCookie
from typing import Optional, Dict, Any, Callable
from urllib.parse import parse_qs, urlsplit

from jsonschema import Draft7Validator
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from xanthus.errors import ControlPlaneError, ValidationError, error_result

from .sessions import SessionManager, SessionStatus, TerminalSession
from .tokens import TokenService

logger = logging.getLogger(__name__)

PATH_PREFIX = "/ws/terminal/"
TOKEN_QUERY_PARAM = "token"
TOKEN_COOKIE = "cf_token"

CONTROL_FRAME_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": ["ready", "resize", "data"]},
        "cols": {"type": "integer", "minimum": 1, "maximum": 1000},
        "rows": {"type": "integer", "minimum": 1, "maximum": 1000},
        "payload": {"type": "string"},
    },
    "allOf": [
        {"if": {"properties": {"type": {"const": "resize"}}},
         "then": {"required": ["cols", "rows"]}},
        {"if": {"properties": {"type": {"const": "data"}}},
         "then": {"required": ["payload"]}},
    ],
}

_validator = Draft7Validator(CONTROL_FRAME_SCHEMA)


def parse_control_frame(text: str) -> Dict[str, Any]:
    """Decode and validate one JSON control frame."""
    try:
        frame = json.loads(text)
    except ValueError as e:
        raise ValidationError("Control frame is not valid JSON", detail=str(e)) from e
    errors = sorted(_validator.iter_errors(frame), key=lambda e: list(e.path))
    if errors:
        raise ValidationError(f"Invalid control frame: {errors[0].message}")
    return frame


def extract_token(headers, path: str) -> Optional[str]:
    """Bearer header first, then query parameter, then cookie."""
    auth = headers.get("Authorization") or ""
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token

    values = parse_qs(urlsplit(path).query).get(TOKEN_QUERY_PARAM)
    if values and values[0]:
        return values[0]

    raw_cookie = headers.get("Cookie")
    if raw_cookie:
        jar = SimpleCookie()
        try:
            jar.load(raw_cookie)
        except CookieError:
            return None
        if TOKEN_COOKIE in jar and jar[TOKEN_COOKIE].value:
            return jar[TOKEN_COOKIE].value
    return None


def session_id_from_path(path: str) -> Optional[str]:
    route = urlsplit(path).path
    if not route.startswith(PATH_PREFIX):
        return None
    session_id = route[len(PATH_PREFIX):].strip("/")
    return session_id or None


class TerminalBridge:
    """
    WebSocket server bridging authenticated clients to SSH PTYs.

    ``open_channel(session)`` must return an interactive paramiko
    channel for the session's instance.
    """

    DEFAULT_HOST = "0.0.0.0"
    DEFAULT_PORT = 8765
    READ_SIZE = 4096
    POLL_INTERVAL_SEC = 0.5

    def __init__(
        self,
        sessions: SessionManager,
        open_channel: Callable[[TerminalSession], Any],
        auth_tokens: Dict[str, str] = None,
        tokens: Optional[TokenService] = None,
        host: str = None,
        port: int = None,
    ):
        self.sessions = sessions
        self.open_channel = open_channel
        self._auth_tokens = dict(auth_tokens or {})
        self.tokens = tokens
        self.host = host or self.DEFAULT_HOST
        self.port = port if port is not None else self.DEFAULT_PORT

        self._server = None
        self._thread: Optional[threading.Thread] = None
        self._bytes_in = 0
        self._bytes_out = 0

    # ── Authentication ───────────────────────────────────────────

    def authenticate(self, token: Optional[str]) -> Optional[str]:
        """User for ``token`` (a static token or a signed access token), or None."""
        if not token:
            return None
        for known, user in self._auth_tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return user
        if self.tokens is not None:
            return self.tokens.subject(token)
        return None

    def process_request(self, connection, request):
        """Reject before the upgrade unless the token owns the session."""
        session_id = session_id_from_path(request.path)
        if session_id is None:
            return connection.respond(HTTPStatus.NOT_FOUND, "Unknown endpoint\n")

        user = self.authenticate(extract_token(request.headers, request.path))
        if user is None:
            logger.warning(f"Terminal auth rejected for session {session_id[:8]}")
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Authentication required\n")

        session = self.sessions.get(session_id)
        if session is None:
            return connection.respond(HTTPStatus.NOT_FOUND, "Terminal session not found\n")
        if session.owner != user:
            logger.warning(f"User {user} tried to attach session {session_id[:8]} of {session.owner}")
            return connection.respond(HTTPStatus.FORBIDDEN, "Session belongs to another user\n")
        if session.status != SessionStatus.CONNECTING:
            return connection.respond(HTTPStatus.CONFLICT, "Session already attached\n")
        return None

    # ── Connection Handler ───────────────────────────────────────

    def _send_error(self, websocket, message: str):
        try:
            websocket.send(json.dumps({"type": "error", "message": message}))
        except ConnectionClosed:
            logger.debug(f"Error frame dropped, client already gone: {message}")

    def handle(self, websocket):
        session_id = session_id_from_path(websocket.request.path)
        try:
            session = self.sessions.claim(session_id)
        except ControlPlaneError as e:
            self._send_error(websocket, e.message)
            websocket.close(1008, e.kind)
            return

        try:
            channel = self.open_channel(session)
        except ControlPlaneError as e:
            logger.error(f"Terminal {session_id[:8]}: PTY open failed: {e}")
            self._send_error(websocket, error_result(e)["message"])
            websocket.close(1011, "pty unavailable")
            self.sessions.close(session_id, "pty open failed")
            return

        cancel = session.cancel
        workers = [
            threading.Thread(target=self._client_to_pty, args=(websocket, channel, session),
                             name=f"term-in-{session_id[:8]}", daemon=True),
            threading.Thread(target=self._pty_to_client, args=(websocket, channel, session),
                             name=f"term-out-{session_id[:8]}", daemon=True),
        ]
        try:
            # Input is withheld by the client until this frame arrives.
            websocket.send(json.dumps({"type": "ready"}))
            self.sessions.mark_running(session_id)
            for t in workers:
                t.start()
            cancel.wait()
        except ConnectionClosed:
            cancel.set()
        finally:
            channel.close()
            websocket.close()
            for t in workers:
                if t.is_alive():
                    t.join(timeout=5)
            self.sessions.close(session_id, "disconnected")

    def _client_to_pty(self, websocket, channel, session: TerminalSession):
        cancel = session.cancel
        try:
            while not cancel.is_set():
                try:
                    message = websocket.recv(timeout=self.POLL_INTERVAL_SEC)
                except TimeoutError:
                    continue
                self.sessions.touch(session.id)

                if isinstance(message, bytes):
                    channel.sendall(message)
                    self._bytes_in += len(message)
                    continue

                try:
                    frame = parse_control_frame(message)
                except ValidationError as e:
                    self._send_error(websocket, e.message)
                    continue

                if frame["type"] == "data":
                    data = frame["payload"].encode("utf-8")
                    channel.sendall(data)
                    self._bytes_in += len(data)
                elif frame["type"] == "resize":
                    channel.resize_pty(width=frame["cols"], height=frame["rows"])
        except ConnectionClosed:
            logger.info(f"Terminal {session.id[:8]}: client closed")
        except (OSError, EOFError) as e:
            logger.warning(f"Terminal {session.id[:8]}: PTY write failed: {e}")
        finally:
            cancel.set()

    def _pty_to_client(self, websocket, channel, session: TerminalSession):
        cancel = session.cancel
        channel.settimeout(self.POLL_INTERVAL_SEC)
        try:
            while not cancel.is_set():
                try:
                    data = channel.recv(self.READ_SIZE)
                except socket.timeout:
                    continue
                if not data:
                    logger.info(f"Terminal {session.id[:8]}: remote shell exited")
                    break
                websocket.send(data)
                self._bytes_out += len(data)
                self.sessions.touch(session.id)
        except ConnectionClosed:
            logger.info(f"Terminal {session.id[:8]}: client gone while sending")
        except (OSError, EOFError) as e:
            logger.warning(f"Terminal {session.id[:8]}: PTY read failed: {e}")
        finally:
            cancel.set()

    # ── Server ───────────────────────────────────────────────────

    def serve_forever(self):
        with serve(self.handle, self.host, self.port, process_request=self.process_request) as server:
            self._server = server
            logger.info(f"Terminal bridge listening on ws://{self.host}:{self.port}{PATH_PREFIX}<id>")
            server.serve_forever()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self.serve_forever, name="terminal-bridge", daemon=True)
        self._thread.start()

    def stop(self):
        if self._server is not None:
            self._server.shutdown()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "listening": self._server is not None,
            "port": self.port,
            "bytes_in": self._bytes_in,
            "bytes_out": self._bytes_out,
            **self.sessions.get_stats(),
        }
