#!/usr/bin/env python3
"""
Hetzner Cloud Provider — compute adapter for api.hetzner.cloud

Implements:
- create_instance(spec) -> ProviderInstance
- get_instance(server_id) -> ProviderInstance | None
- delete_instance(server_id)              (404 counts as deleted)
- power_action(server_id, PowerAction)
- list_instances() -> list[ProviderInstance]   (managed_by=xanthus only)
- ensure_ssh_key(public_key) -> SSHKeyRef      (content-addressed)
- list_ssh_keys() -> list[SSHKeyRef]
"""

import logging
import os
from typing import Optional, Dict, Any, List

from xanthus.errors import NotFoundError, ValidationError
from certs.crypto import normalize_public_key, public_key_fingerprint

from .bootstrap import render_user_data
from .providers import (
    ComputeProvider, InstanceSpec, PowerAction, ProviderInstance,
    RestProviderMixin, SSHKeyRef,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://api.hetzner.cloud/v1"

MANAGED_LABELS = {"managed_by": "xanthus", "purpose": "k3s-cluster"}

_POWER_ENDPOINTS = {
    PowerAction.OFF: "poweroff",
    PowerAction.ON: "poweron",
    PowerAction.REBOOT: "reboot",
}


class HetznerProvider(RestProviderMixin, ComputeProvider):
    """
    Hetzner Cloud adapter.

    Auth: Bearer token from HETZNER_API_TOKEN env var or constructor arg.
    """

    name = "hetzner"
    BASE_URL = BASE_URL
    DEFAULT_TIMEOUT = 30
    PAGE_SIZE = 50

    SIZE_ALIASES = {"small": "cx22", "medium": "cx32", "large": "cx42", "xlarge": "cx52"}
    SIZES = {
        "cx22": {"cores": 2, "memory_gb": 4, "disk_gb": 40},
        "cx32": {"cores": 4, "memory_gb": 8, "disk_gb": 80},
        "cx42": {"cores": 8, "memory_gb": 16, "disk_gb": 160},
        "cx52": {"cores": 16, "memory_gb": 32, "disk_gb": 320},
        "cpx11": {"cores": 2, "memory_gb": 2, "disk_gb": 40},
        "cpx21": {"cores": 3, "memory_gb": 4, "disk_gb": 80},
        "cpx31": {"cores": 4, "memory_gb": 8, "disk_gb": 160},
        "cpx41": {"cores": 8, "memory_gb": 16, "disk_gb": 240},
    }
    REGIONS = ["fsn1", "nbg1", "hel1", "ash", "hil", "sin"]

    def __init__(self, api_token: str = None, timeout: int = None):
        self.api_token = api_token or os.environ.get("HETZNER_API_TOKEN")
        self.timeout = timeout or self.DEFAULT_TIMEOUT

        if not self.api_token:
            logger.warning("No Hetzner API token configured. Set HETZNER_API_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"HetznerProvider initialized "
            f"(token={'configured' if self.api_token else 'missing'})"
        )

    def _error_message(self, data: Any) -> str:
        # {"error": {"code": "...", "message": "..."}}
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            err = data["error"]
            return f"{err.get('code', '')}: {err.get('message', '')}".strip(": ")
        return super()._error_message(data)

    # ── Servers ──────────────────────────────────────────────────

    def create_instance(self, spec: InstanceSpec) -> ProviderInstance:
        self.validate_spec(spec)
        if not spec.ssh_key_ref:
            raise ValidationError("An SSH key must be registered before creating a server")

        body = {
            "name": spec.name,
            "server_type": self.resolve_size(spec.size),
            "location": spec.region,
            "image": spec.image,
            "ssh_keys": [spec.ssh_key_ref],
            "user_data": spec.user_data or render_user_data(timezone=spec.timezone),
            "labels": {**spec.labels, **MANAGED_LABELS},
            "start_after_create": True,
        }
        data = self._json("POST", "/servers", json=body)
        server = self._parse_server(data["server"])
        logger.info(f"Created Hetzner server {server.name} (id={server.instance_id})")
        return server

    def get_instance(self, instance_id: str) -> Optional[ProviderInstance]:
        try:
            data = self._json("GET", f"/servers/{instance_id}")
        except NotFoundError:
            return None
        return self._parse_server(data["server"])

    def delete_instance(self, instance_id: str):
        try:
            self._request("DELETE", f"/servers/{instance_id}")
        except NotFoundError:
            logger.info(f"Hetzner server {instance_id} already gone")
            return
        logger.info(f"Deleted Hetzner server {instance_id}")

    def power_action(self, instance_id: str, action: PowerAction):
        endpoint = _POWER_ENDPOINTS[action]
        self._request("POST", f"/servers/{instance_id}/actions/{endpoint}")
        logger.info(f"Hetzner server {instance_id}: {endpoint} requested")

    def list_instances(self) -> List[ProviderInstance]:
        raw = self._paginate("/servers", "servers", {"label_selector": "managed_by=xanthus"})
        servers = [self._parse_server(s) for s in raw]
        logger.info(f"Listed {len(servers)} Hetzner servers")
        return servers

    def _paginate(self, endpoint: str, collection: str,
                  params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        """Every item of a paginated collection, following meta.pagination.next_page."""
        items: List[Dict[str, Any]] = []
        page = 1
        while page:
            data = self._json("GET", endpoint, params={**(params or {}), "page": page,
                                                        "per_page": self.PAGE_SIZE})
            items.extend(data.get(collection, []))
            pagination = (data.get("meta") or {}).get("pagination") or {}
            page = pagination.get("next_page")
        return items

    # ── SSH Keys ─────────────────────────────────────────────────

    def list_ssh_keys(self) -> List[SSHKeyRef]:
        return [
            SSHKeyRef(
                provider=self.name,
                key_id=str(k["id"]),
                name=k.get("name", ""),
                public_key=k.get("public_key", ""),
                fingerprint=k.get("fingerprint", ""),
            )
            for k in self._paginate("/ssh_keys", "ssh_keys")
        ]

    def ensure_ssh_key(self, public_key: str, name: str = "") -> SSHKeyRef:
        wanted = normalize_public_key(public_key)
        for key in self.list_ssh_keys():
            try:
                if normalize_public_key(key.public_key) == wanted:
                    logger.info(f"Reusing Hetzner SSH key {key.name} (id={key.key_id})")
                    return key
            except ValueError:
                continue

        key_name = name or f"xanthus-{public_key_fingerprint(public_key)[:12]}"
        data = self._json("POST", "/ssh_keys", json={
            "name": key_name,
            "public_key": wanted,
            "labels": {"managed_by": "xanthus"},
        })
        k = data["ssh_key"]
        logger.info(f"Created Hetzner SSH key {key_name} (id={k['id']})")
        return SSHKeyRef(
            provider=self.name,
            key_id=str(k["id"]),
            name=k.get("name", key_name),
            public_key=k.get("public_key", wanted),
            fingerprint=k.get("fingerprint", ""),
        )

    # ── Parsing ──────────────────────────────────────────────────

    def _parse_server(self, data: Dict[str, Any]) -> ProviderInstance:
        """Parse a server object from the API."""
        public_net = data.get("public_net") or {}
        ipv4 = (public_net.get("ipv4") or {}).get("ip", "") or ""

        datacenter = data.get("datacenter") or {}
        location = (datacenter.get("location") or {}).get("name", "")

        server_type = data.get("server_type") or {}
        hourly, monthly = self._parse_prices(server_type.get("prices") or [], location)

        return ProviderInstance(
            provider=self.name,
            instance_id=str(data["id"]),
            name=data.get("name", ""),
            status=data.get("status", "unknown"),
            ipv4=ipv4,
            size=server_type.get("name", ""),
            region=location,
            created_at=data.get("created"),
            hourly_rate=hourly,
            monthly_rate=monthly,
            raw=data,
        )

    @staticmethod
    def _parse_prices(prices: List[Dict[str, Any]], location: str):
        """Gross hourly/monthly price for the server's location."""
        for price in prices:
            if price.get("location") != location:
                continue
            try:
                hourly = float((price.get("price_hourly") or {}).get("gross", 0))
                monthly = float((price.get("price_monthly") or {}).get("gross", 0))
            except (TypeError, ValueError):
                return 0.0, 0.0
            return hourly, monthly
        return 0.0, 0.0

    def __repr__(self) -> str:
        return f"HetznerProvider(requests={self._request_count}, errors={self._error_count})"
