#!/usr/bin/env python3
"""
Provider Abstraction — one interface over heterogeneous compute APIs.

Every adapter exposes the same five operations (create, delete, power,
list, ensure-ssh-key) and raises classified errors from xanthus.errors,
so the lifecycle manager never sees provider-specific failure shapes.

Usage:
    registry = ProviderRegistry()
    registry.register(HetznerProvider(api_token="..."))
    provider = registry.get("hetzner")
    server = provider.create_instance(InstanceSpec(name="k3s-1", size="small", region="nbg1"))
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, List

import requests

from xanthus.errors import ProviderError, ValidationError, classify_http_error

logger = logging.getLogger(__name__)


# ── Data Models ──────────────────────────────────────────────────

class PowerAction(Enum):
    OFF = "off"
    ON = "on"
    REBOOT = "reboot"


@dataclass
class InstanceSpec:
    """What the caller asks for."""
    name: str
    size: str
    region: str
    provider: str = "hetzner"
    image: str = "ubuntu-24.04"
    ssh_key_ref: str = ""
    user_data: str = ""
    timezone: str = ""
    domain: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceSpec":
        # "type" is accepted as an alias of "size".
        size = data.get("size") or data.get("type") or ""
        return cls(
            name=data.get("name", ""),
            size=size,
            region=data.get("region", ""),
            provider=data.get("provider", "hetzner"),
            image=data.get("image", "ubuntu-24.04"),
            timezone=data.get("timezone", ""),
            domain=data.get("domain"),
            labels=dict(data.get("labels", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("user_data", None)
        return d


@dataclass
class ProviderInstance:
    """An instance as the provider reports it."""
    provider: str
    instance_id: str
    name: str
    status: str
    ipv4: str = ""
    size: str = ""
    region: str = ""
    created_at: Optional[str] = None
    hourly_rate: float = 0.0
    monthly_rate: float = 0.0
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False)

    RUNNING_STATES = ("running",)

    @property
    def ready(self) -> bool:
        """Booted and reachable on a public address."""
        return self.status in self.RUNNING_STATES and bool(self.ipv4)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("raw", None)
        return d


@dataclass
class SSHKeyRef:
    """A provider-side SSH key resource."""
    provider: str
    key_id: str
    name: str
    public_key: str
    fingerprint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Error Classification ─────────────────────────────────────────

def is_transient(exc: Exception) -> bool:
    """Retry predicate for provider calls."""
    return isinstance(exc, ProviderError) and exc.retryable


# ── Provider Interface ───────────────────────────────────────────

class ComputeProvider(ABC):
    """Contract every compute adapter fulfils."""

    name = "abstract"

    # size alias -> provider-native size
    SIZE_ALIASES: Dict[str, str] = {}
    SIZES: Dict[str, Dict[str, Any]] = {}
    REGIONS: List[str] = []

    def resolve_size(self, size: str) -> str:
        return self.SIZE_ALIASES.get(size, size)

    def validate_spec(self, spec: InstanceSpec):
        """Reject sizes and regions this provider does not offer."""
        if not spec.name:
            raise ValidationError("Instance name is required")
        size = self.resolve_size(spec.size)
        if self.SIZES and size not in self.SIZES:
            raise ValidationError(
                f"{self.name} does not offer size '{spec.size}'",
                detail=f"supported: {sorted(set(self.SIZES) | set(self.SIZE_ALIASES))}",
            )
        if self.REGIONS and spec.region not in self.REGIONS:
            raise ValidationError(
                f"{self.name} does not offer region '{spec.region}'",
                detail=f"supported: {self.REGIONS}",
            )

    @abstractmethod
    def create_instance(self, spec: InstanceSpec) -> ProviderInstance:
        """Allocate billable compute. Callers must compensate on later failure."""

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[ProviderInstance]:
        """Current view of one instance, or None if it no longer exists."""

    @abstractmethod
    def delete_instance(self, instance_id: str):
        """Delete an instance. Deleting an absent instance is success."""

    @abstractmethod
    def power_action(self, instance_id: str, action: PowerAction):
        """Power off / on / reboot."""

    @abstractmethod
    def list_instances(self) -> List[ProviderInstance]:
        """Instances managed by this control plane."""

    @abstractmethod
    def ensure_ssh_key(self, public_key: str, name: str = "") -> SSHKeyRef:
        """Return the provider key matching ``public_key`` by content, creating it if absent."""


class RestProviderMixin:
    """
    Shared authenticated JSON transport for REST providers.

    Subclasses set ``name``, ``BASE_URL`` and ``api_token``, and may
    override ``_error_message`` to pull the message out of their error
    envelope.
    """

    BASE_URL = ""
    DEFAULT_TIMEOUT = 30

    name = "rest"
    api_token: Optional[str] = None
    timeout: int = DEFAULT_TIMEOUT
    _request_count = 0
    _error_count = 0

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _error_message(self, data: Any) -> str:
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or "")
        return ""

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Authenticated request. Returns the response on 2xx; raises a
        classified error otherwise. Timeouts and connection errors are
        transient.
        """
        url = f"{self.BASE_URL}{path}"
        self._request_count += 1

        try:
            resp = requests.request(
                method, url,
                headers=self._headers(),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            self._error_count += 1
            logger.error(f"{self.name} API timeout: {method} {path}")
            raise ProviderError(
                f"{self.name}: request timed out", ProviderError.TRANSIENT,
                provider=self.name, detail=str(e),
            ) from e
        except requests.ConnectionError as e:
            self._error_count += 1
            logger.error(f"{self.name} API connection error: {method} {path}")
            raise ProviderError(
                f"{self.name}: connection failed", ProviderError.TRANSIENT,
                provider=self.name, detail=str(e),
            ) from e

        if resp.status_code >= 400:
            self._error_count += 1
            logger.warning(
                f"{self.name} API error: {method} {path} -> "
                f"{resp.status_code} {resp.text[:300]}"
            )
            try:
                message = self._error_message(resp.json())
            except ValueError:
                message = ""
            raise classify_http_error(
                self.name, resp.status_code, message or resp.reason or "",
                detail=resp.text[:1000],
            )
        return resp

    def _json(self, method: str, path: str, **kwargs) -> Any:
        resp = self._request(method, path, **kwargs)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name}: malformed response", ProviderError.TRANSIENT,
                provider=self.name, status_code=resp.status_code, detail=resp.text[:300],
            ) from e

    def get_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "base_url": self.BASE_URL,
            "requests": self._request_count,
            "errors": self._error_count,
            "token_configured": bool(self.api_token),
        }


# ── Registry ─────────────────────────────────────────────────────

class ProviderRegistry:
    """Provider adapters by name."""

    def __init__(self):
        self._providers: Dict[str, ComputeProvider] = {}

    def register(self, provider: ComputeProvider):
        self._providers[provider.name] = provider
        logger.info(f"Provider registered: {provider.name}")

    def get(self, name: str) -> ComputeProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ValidationError(
                f"Unknown provider '{name}'",
                detail=f"registered: {sorted(self._providers)}",
            )
        return provider

    def names(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers
