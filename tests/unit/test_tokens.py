#!/usr/bin/env python3
"""
Unit tests for terminal access tokens
"""

import base64
import json
import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from terminal.tokens import TokenService, generate_secret
from xanthus.errors import AuthenticationError, ValidationError

SECRET = b"k" * 32


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens(clock):
    return TokenService(SECRET, access_ttl=900, refresh_ttl=3600, clock=clock)


def _claims(token):
    part = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))


# ── Issue & Validate ─────────────────────────────────────────────

class TestIssue:

    def test_pair_claims(self, tokens, clock):
        access, refresh = tokens.issue_pair("alice", {"namespace_id": "ns-1"})
        claims = tokens.validate(access)
        assert claims["sub"] == "alice"
        assert claims["iss"] == "xanthus"
        assert claims["typ"] == "access"
        assert claims["namespace_id"] == "ns-1"
        assert claims["exp"] == int(clock.now) + 900
        assert _claims(refresh)["exp"] == int(clock.now) + 3600

    def test_header_is_hs256(self, tokens):
        access, _ = tokens.issue_pair("alice")
        part = access.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_empty_subject(self, tokens):
        with pytest.raises(ValidationError):
            tokens.issue_pair("")

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            TokenService(b"short")

    def test_generated_secret_length(self):
        assert len(generate_secret()) == 32

    def test_string_secret_accepted(self, clock):
        svc = TokenService("a-long-enough-secret-string", clock=clock)
        access, _ = svc.issue_pair("alice")
        assert svc.validate(access)["sub"] == "alice"


class TestValidate:

    def test_expired(self, tokens, clock):
        access, _ = tokens.issue_pair("alice")
        clock.now += 901
        with pytest.raises(AuthenticationError) as exc:
            tokens.validate(access)
        assert "expired" in exc.value.message

    def test_tampered_claims(self, tokens):
        access, _ = tokens.issue_pair("alice")
        header, claims, sig = access.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({**_claims(access), "sub": "root"}).encode()
        ).rstrip(b"=").decode()
        with pytest.raises(AuthenticationError):
            tokens.validate(f"{header}.{forged}.{sig}")

    def test_other_secret(self, tokens, clock):
        access, _ = TokenService(b"x" * 32, clock=clock).issue_pair("alice")
        with pytest.raises(AuthenticationError):
            tokens.validate(access)

    def test_refresh_token_is_not_access(self, tokens):
        _, refresh = tokens.issue_pair("alice")
        with pytest.raises(AuthenticationError):
            tokens.validate(refresh)

    def test_alg_none_rejected(self, tokens):
        access, _ = tokens.issue_pair("alice")
        none_header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').rstrip(b"=").decode()
        _, claims, _ = access.split(".")
        with pytest.raises(AuthenticationError):
            tokens.validate(f"{none_header}.{claims}.")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c", "!!.??.**"])
    def test_garbage(self, tokens, garbage):
        with pytest.raises(AuthenticationError):
            tokens.validate(garbage)

    def test_subject_swallows_rejection(self, tokens):
        access, _ = tokens.issue_pair("alice")
        assert tokens.subject(access) == "alice"
        assert tokens.subject("nope") is None
        assert tokens.subject(None) is None
        assert tokens.get_stats()["rejected"] == 1


class TestRefresh:

    def test_refresh_issues_new_pair(self, tokens, clock):
        _, refresh = tokens.issue_pair("alice", {"namespace_id": "ns-1"})
        clock.now += 1000
        access, new_refresh = tokens.refresh(refresh)
        claims = tokens.validate(access)
        assert claims["sub"] == "alice"
        assert claims["namespace_id"] == "ns-1"
        assert claims["iat"] == int(clock.now)
        assert tokens.validate(new_refresh, kind="refresh")["sub"] == "alice"

    def test_access_token_cannot_refresh(self, tokens):
        access, _ = tokens.issue_pair("alice")
        with pytest.raises(AuthenticationError):
            tokens.refresh(access)

    def test_expired_refresh(self, tokens, clock):
        _, refresh = tokens.issue_pair("alice")
        clock.now += 3601
        with pytest.raises(AuthenticationError):
            tokens.refresh(refresh)
