#!/usr/bin/env python3
"""
Terminal Access Tokens — short-lived signed bearer tokens for the bridge.

Compact HS256 JWTs (``header.claims.signature``, base64url) signed with
the cryptography HMAC primitive. An access token is what the bridge
accepts; a refresh token only buys a new pair. Both carry ``iss``,
``sub``, ``typ``, ``iat``, ``nbf`` and ``exp``.

Usage:
    tokens = TokenService(secret=b"...")
    access, refresh = tokens.issue_pair("alice")
    claims = tokens.validate(access)            # {"sub": "alice", ...}
    access, refresh = tokens.refresh(refresh)
"""

import base64
import json
import logging
import secrets
import time
from typing import Optional, Dict, Any, Callable, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from xanthus.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

ISSUER = "xanthus"
ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}


def generate_secret() -> bytes:
    """32 random bytes, enough for HS256."""
    return secrets.token_bytes(32)


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _canonical(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


class TokenService:
    """Issues, validates and refreshes access/refresh token pairs."""

    def __init__(
        self,
        secret: bytes,
        access_ttl: float = 900,
        refresh_ttl: float = 7 * 24 * 3600,
        issuer: str = ISSUER,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if len(secret) < 16:
            raise ValidationError("Token signing secret must be at least 16 bytes")
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self._clock = clock
        self._issued = 0
        self._rejected = 0

    def _sign(self, signing_input: bytes) -> bytes:
        mac = hmac.HMAC(self._secret, hashes.SHA256())
        mac.update(signing_input)
        return mac.finalize()

    def _encode(self, subject: str, kind: str, ttl: float, extra: Dict[str, Any]) -> str:
        now = int(self._clock())
        claims = {
            **(extra or {}),
            "iss": self.issuer,
            "sub": subject,
            "typ": kind,
            "iat": now,
            "nbf": now,
            "exp": now + int(ttl),
        }
        signing_input = f"{_b64e(_canonical(_HEADER))}.{_b64e(_canonical(claims))}"
        signature = self._sign(signing_input.encode("ascii"))
        self._issued += 1
        return f"{signing_input}.{_b64e(signature)}"

    def issue_pair(self, subject: str, extra: Dict[str, Any] = None) -> Tuple[str, str]:
        """``(access, refresh)`` for ``subject``; ``extra`` claims ride along in both."""
        if not subject:
            raise ValidationError("A token needs a subject")
        return (
            self._encode(subject, ACCESS, self.access_ttl, extra),
            self._encode(subject, REFRESH, self.refresh_ttl, extra),
        )

    def _reject(self, message: str, detail: str = "") -> AuthenticationError:
        self._rejected += 1
        return AuthenticationError(message, detail=detail)

    def validate(self, token: str, kind: str = ACCESS) -> Dict[str, Any]:
        """
        Claims of a genuine, current token of ``kind``.

        Raises AuthenticationError for a bad signature, a foreign issuer,
        the wrong token type, or a token outside its nbf/exp window. An
        expired token says so in the message.
        """
        parts = (token or "").split(".")
        if len(parts) != 3:
            raise self._reject("Invalid token", "not a compact JWT")

        header_b64, claims_b64, sig_b64 = parts
        try:
            header = json.loads(_b64d(header_b64))
            claims = json.loads(_b64d(claims_b64))
            signature = _b64d(sig_b64)
        except ValueError as e:
            raise self._reject("Invalid token", f"undecodable: {e}") from e

        if not isinstance(header, dict) or header.get("alg") != _HEADER["alg"]:
            raise self._reject("Invalid token", f"unexpected signing method: {header!r}")

        mac = hmac.HMAC(self._secret, hashes.SHA256())
        mac.update(f"{header_b64}.{claims_b64}".encode("ascii"))
        try:
            mac.verify(signature)
        except InvalidSignature as e:
            raise self._reject("Invalid token", "signature mismatch") from e

        if not isinstance(claims, dict):
            raise self._reject("Invalid token", "claims are not an object")
        if claims.get("iss") != self.issuer:
            raise self._reject("Invalid token", f"issuer {claims.get('iss')!r}")
        if claims.get("typ") != kind:
            raise self._reject("Invalid token", f"expected a {kind} token, got {claims.get('typ')!r}")

        now = self._clock()
        try:
            exp = float(claims["exp"])
            nbf = float(claims.get("nbf", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise self._reject("Invalid token", "missing or malformed exp/nbf") from e
        if now >= exp:
            raise self._reject("Token has expired")
        if now < nbf:
            raise self._reject("Invalid token", "not yet valid")
        return claims

    def subject(self, token: Optional[str]) -> Optional[str]:
        """``sub`` of a valid access token, or None."""
        if not token:
            return None
        try:
            return self.validate(token)["sub"]
        except AuthenticationError as e:
            logger.debug(f"Access token rejected: {e}")
            return None

    def refresh(self, refresh_token: str) -> Tuple[str, str]:
        """Trade a valid refresh token for a new pair with the same claims."""
        claims = self.validate(refresh_token, kind=REFRESH)
        extra = {k: v for k, v in claims.items()
                 if k not in ("iss", "sub", "typ", "iat", "nbf", "exp")}
        logger.info(f"Refreshed tokens for {claims['sub']}")
        return self.issue_pair(claims["sub"], extra)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "issued": self._issued,
            "rejected": self._rejected,
            "access_ttl": self.access_ttl,
            "refresh_ttl": self.refresh_ttl,
        }
