"""Configuration loader for the control plane."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from jsonschema import Draft7Validator

from .errors import ValidationError


@dataclass(frozen=True)
class ProviderConfig:
    api_token: str = ""


@dataclass(frozen=True)
class SSHConfig:
    user: str
    port: int
    connect_timeout: int
    connect_attempts: int
    stale_after_sec: int
    private_key_path: str


@dataclass(frozen=True)
class LifecycleConfig:
    provision_timeout_sec: int
    bootstrap_timeout_sec: int
    poll_initial_sec: float
    poll_max_sec: float
    workers: int


@dataclass(frozen=True)
class CloudflareConfig:
    api_token: str
    root_cert_url: str


@dataclass(frozen=True)
class TerminalConfig:
    host: str
    port: int
    idle_timeout_sec: int
    sweep_interval_sec: int
    term: str
    cols: int
    rows: int


@dataclass(frozen=True)
class ControlPlaneConfig:
    db_path: Path
    default_provider: str
    hetzner: ProviderConfig
    hostinger: ProviderConfig
    ssh: SSHConfig
    lifecycle: LifecycleConfig
    cloudflare: CloudflareConfig
    terminal: TerminalConfig
    encryption_token: str
    auth_tokens: Dict[str, str] = field(default_factory=dict)
    token_secret: str = ""
    access_token_ttl_sec: int = 900
    refresh_token_ttl_sec: int = 7 * 24 * 3600
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlPlaneConfig":
        providers = data.get("providers", {})
        ssh = data.get("ssh", {})
        lifecycle = data.get("lifecycle", {})
        cloudflare = data.get("cloudflare", {})
        terminal = data.get("terminal", {})
        auth = data.get("auth", {})
        cf_token = cloudflare.get("api_token", "")
        return cls(
            db_path=Path(data.get("state", {}).get("db_path", "~/.xanthus/state.db")).expanduser(),
            default_provider=providers.get("default", "hetzner"),
            hetzner=ProviderConfig(api_token=providers.get("hetzner", {}).get("api_token", "")),
            hostinger=ProviderConfig(api_token=providers.get("hostinger", {}).get("api_token", "")),
            ssh=SSHConfig(
                user=ssh.get("user", "root"),
                port=int(ssh.get("port", 22)),
                connect_timeout=int(ssh.get("connect_timeout", 30)),
                connect_attempts=int(ssh.get("connect_attempts", 3)),
                stale_after_sec=int(ssh.get("stale_after_sec", 600)),
                private_key_path=ssh.get("private_key_path", ""),
            ),
            lifecycle=LifecycleConfig(
                provision_timeout_sec=int(lifecycle.get("provision_timeout_sec", 300)),
                bootstrap_timeout_sec=int(lifecycle.get("bootstrap_timeout_sec", 900)),
                poll_initial_sec=float(lifecycle.get("poll_initial_sec", 2.0)),
                poll_max_sec=float(lifecycle.get("poll_max_sec", 30.0)),
                workers=int(lifecycle.get("workers", 4)),
            ),
            cloudflare=CloudflareConfig(
                api_token=cf_token,
                root_cert_url=cloudflare.get(
                    "root_cert_url",
                    "https://developers.cloudflare.com/ssl/static/origin_ca_rsa_root.pem",
                ),
            ),
            terminal=TerminalConfig(
                host=terminal.get("host", "0.0.0.0"),
                port=int(terminal.get("port", 8765)),
                idle_timeout_sec=int(terminal.get("idle_timeout_sec", 1800)),
                sweep_interval_sec=int(terminal.get("sweep_interval_sec", 300)),
                term=terminal.get("term", "xterm-256color"),
                cols=int(terminal.get("cols", 80)),
                rows=int(terminal.get("rows", 24)),
            ),
            # Secrets are encrypted with the Cloudflare token unless a
            # dedicated one is configured.
            encryption_token=data.get("secrets", {}).get("encryption_token", "") or cf_token,
            auth_tokens=dict(auth.get("tokens", {})),
            token_secret=auth.get("token_secret", ""),
            access_token_ttl_sec=int(auth.get("access_token_ttl_sec", 900)),
            refresh_token_ttl_sec=int(auth.get("refresh_token_ttl_sec", 7 * 24 * 3600)),
            log_level=str(data.get("log_level", "INFO")).upper(),
        )


CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "log_level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR",
                                                 "debug", "info", "warning", "error"]},
        "state": {
            "type": "object",
            "properties": {"db_path": {"type": "string"}},
        },
        "providers": {
            "type": "object",
            "properties": {
                "default": {"type": "string", "enum": ["hetzner", "hostinger"]},
                "hetzner": {"type": "object", "properties": {"api_token": {"type": "string"}}},
                "hostinger": {"type": "object", "properties": {"api_token": {"type": "string"}}},
            },
        },
        "ssh": {
            "type": "object",
            "properties": {
                "user": {"type": "string", "minLength": 1},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "connect_timeout": {"type": "integer", "minimum": 1},
                "connect_attempts": {"type": "integer", "minimum": 1},
                "stale_after_sec": {"type": "integer", "minimum": 1},
                "private_key_path": {"type": "string"},
            },
        },
        "lifecycle": {
            "type": "object",
            "properties": {
                "provision_timeout_sec": {"type": "integer", "minimum": 1},
                "bootstrap_timeout_sec": {"type": "integer", "minimum": 1},
                "poll_initial_sec": {"type": "number", "minimum": 0},
                "poll_max_sec": {"type": "number", "minimum": 0},
                "workers": {"type": "integer", "minimum": 1},
            },
        },
        "cloudflare": {
            "type": "object",
            "properties": {
                "api_token": {"type": "string"},
                "root_cert_url": {"type": "string"},
            },
        },
        "terminal": {
            "type": "object",
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                "idle_timeout_sec": {"type": "integer", "minimum": 1},
                "sweep_interval_sec": {"type": "integer", "minimum": 1},
                "term": {"type": "string"},
                "cols": {"type": "integer", "minimum": 1},
                "rows": {"type": "integer", "minimum": 1},
            },
        },
        "secrets": {
            "type": "object",
            "properties": {"encryption_token": {"type": "string"}},
        },
        "auth": {
            "type": "object",
            "properties": {
                "tokens": {"type": "object", "additionalProperties": {"type": "string"}},
                "token_secret": {"type": "string"},
                "access_token_ttl_sec": {"type": "integer", "minimum": 1},
                "refresh_token_ttl_sec": {"type": "integer", "minimum": 1},
            },
        },
    },
}

_validator = Draft7Validator(CONFIG_SCHEMA)


ENV_MAP = {
    "log_level": "XANTHUS_LOG_LEVEL",
    "state.db_path": "XANTHUS_STATE_DB",
    "providers.default": "XANTHUS_PROVIDER",
    "providers.hetzner.api_token": "HETZNER_API_TOKEN",
    "providers.hostinger.api_token": "HOSTINGER_API_TOKEN",
    "ssh.user": "XANTHUS_SSH_USER",
    "ssh.port": "XANTHUS_SSH_PORT",
    "ssh.connect_timeout": "XANTHUS_SSH_TIMEOUT",
    "ssh.private_key_path": "SSH_PRIVATE_KEY_PATH",
    "lifecycle.provision_timeout_sec": "XANTHUS_PROVISION_TIMEOUT_SEC",
    "cloudflare.api_token": "CLOUDFLARE_API_TOKEN",
    "terminal.host": "XANTHUS_TERMINAL_HOST",
    "terminal.port": "XANTHUS_TERMINAL_PORT",
    "terminal.idle_timeout_sec": "XANTHUS_TERMINAL_IDLE_SEC",
    "secrets.encryption_token": "XANTHUS_ENCRYPTION_TOKEN",
    "auth.token_secret": "XANTHUS_TOKEN_SECRET",
}

_INT_KEYS = {
    "port", "connect_timeout", "connect_attempts", "stale_after_sec",
    "provision_timeout_sec", "bootstrap_timeout_sec", "workers",
    "idle_timeout_sec", "sweep_interval_sec", "cols", "rows",
    "access_token_ttl_sec", "refresh_token_ttl_sec",
}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        value: Any = os.environ[env_name]
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        last = parts[-1]
        if last in _INT_KEYS:
            value = int(value)
        target[last] = value

    return merged


def validate_config(data: Dict[str, Any]) -> None:
    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = ", ".join(
            f"{'.'.join(str(p) for p in error.path) or '<root>'}: {error.message}"
            for error in errors
        )
        raise ValidationError("Invalid configuration", detail=messages)


def load_config(config_path: Optional[str | Path] = "config/xanthus.yml") -> ControlPlaneConfig:
    """Load YAML config, apply env overrides, validate. ``None`` means env only."""
    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)

    data = merge_env_overrides(data)
    validate_config(data)
    return ControlPlaneConfig.from_dict(data)
