#!/usr/bin/env python3
"""
Hostinger VPS Provider — compute adapter for developers.hostinger.com

Hostinger sells VPS plans rather than on-demand servers, so "create"
means taking a purchased-but-unconfigured machine (state ``initial``)
and running its setup with our template, hostname and SSH key.
"Delete" stops the machine and releases it from management; the plan
itself can only be cancelled from the Hostinger panel.

Implements:
- create_instance(spec) -> ProviderInstance
- get_instance(vm_id) -> ProviderInstance | None
- delete_instance(vm_id)
- power_action(vm_id, PowerAction)        (start / stop / restart)
- list_instances() -> list[ProviderInstance]
- ensure_ssh_key(public_key) -> SSHKeyRef (content-addressed)
- attach_public_key(vm_id, key_ids)
"""

import logging
import os
from typing import Optional, Dict, Any, List

from xanthus.errors import NotFoundError, ProviderError
from certs.crypto import normalize_public_key, public_key_fingerprint

from .bootstrap import render_user_data
from .providers import (
    ComputeProvider, InstanceSpec, PowerAction, ProviderInstance,
    RestProviderMixin, SSHKeyRef,
)

logger = logging.getLogger(__name__)

BASE_URL = "https://developers.hostinger.com"
VPS_PREFIX = "/api/vps/v1"

# Default OS template: Ubuntu 24.04
DEFAULT_TEMPLATE_ID = 1077

_POWER_ENDPOINTS = {
    PowerAction.OFF: "stop",
    PowerAction.ON: "start",
    PowerAction.REBOOT: "restart",
}


class HostingerProvider(RestProviderMixin, ComputeProvider):
    """
    Hostinger VPS adapter.

    Auth: Bearer token from HOSTINGER_API_TOKEN env var or constructor arg.
    """

    name = "hostinger"
    BASE_URL = BASE_URL + VPS_PREFIX
    DEFAULT_TIMEOUT = 30

    def __init__(self, api_token: str = None, timeout: int = None,
                 template_id: int = DEFAULT_TEMPLATE_ID):
        self.api_token = api_token or os.environ.get("HOSTINGER_API_TOKEN") or os.environ.get("API_TOKEN")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.template_id = template_id

        if not self.api_token:
            logger.warning("No Hostinger API token configured. Set HOSTINGER_API_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"HostingerProvider initialized "
            f"(token={'configured' if self.api_token else 'missing'})"
        )

    @staticmethod
    def _unwrap(data: Any) -> Any:
        """Some endpoints wrap payloads in {"data": ...}."""
        if isinstance(data, dict) and "data" in data:
            return data["data"]
        return data

    # ── VM Lifecycle ─────────────────────────────────────────────

    def create_instance(self, spec: InstanceSpec) -> ProviderInstance:
        self.validate_spec(spec)

        candidates = [
            vm for vm in self._list_raw()
            if vm.get("state") == "initial"
        ]
        if not candidates:
            raise ProviderError(
                "hostinger: no unconfigured VPS available on the account",
                ProviderError.QUOTA_EXCEEDED, provider=self.name,
            )
        vm = candidates[0]
        vm_id = vm["id"]

        body: Dict[str, Any] = {
            "template_id": self.template_id,
            "hostname": spec.name,
            "post_install_script": spec.user_data or render_user_data(timezone=spec.timezone),
        }
        if spec.ssh_key_ref:
            body["public_key_ids"] = [int(spec.ssh_key_ref)]
        if spec.region:
            body["data_center_id"] = int(spec.region) if spec.region.isdigit() else spec.region

        data = self._unwrap(self._json("POST", f"/virtual-machines/{vm_id}/setup", json=body))
        instance = self._parse_vm(data if isinstance(data, dict) and data.get("id") else vm)
        instance.name = spec.name
        logger.info(f"Hostinger VM {vm_id} set up as {spec.name}")
        return instance

    def get_instance(self, instance_id: str) -> Optional[ProviderInstance]:
        try:
            data = self._unwrap(self._json("GET", f"/virtual-machines/{instance_id}"))
        except NotFoundError:
            return None
        return self._parse_vm(data)

    def delete_instance(self, instance_id: str):
        vm = self.get_instance(instance_id)
        if vm is None:
            logger.info(f"Hostinger VM {instance_id} already gone")
            return
        if vm.status != "stopped":
            self._request("POST", f"/virtual-machines/{instance_id}/stop")
        logger.warning(
            f"Hostinger VM {instance_id} stopped and released; "
            f"cancel the plan in the Hostinger panel to stop billing"
        )

    def power_action(self, instance_id: str, action: PowerAction):
        endpoint = _POWER_ENDPOINTS[action]
        self._request("POST", f"/virtual-machines/{instance_id}/{endpoint}")
        logger.info(f"Hostinger VM {instance_id}: {endpoint} requested")

    def list_instances(self) -> List[ProviderInstance]:
        vms = [self._parse_vm(vm) for vm in self._list_raw() if vm.get("state") != "initial"]
        logger.info(f"Listed {len(vms)} Hostinger virtual machines")
        return vms

    def _list_raw(self) -> List[Dict[str, Any]]:
        data = self._unwrap(self._json("GET", "/virtual-machines"))
        return data if isinstance(data, list) else []

    # ── SSH Keys ─────────────────────────────────────────────────

    def list_public_keys(self) -> List[SSHKeyRef]:
        data = self._unwrap(self._json("GET", "/public-keys"))
        keys = []
        for k in data if isinstance(data, list) else []:
            keys.append(SSHKeyRef(
                provider=self.name,
                key_id=str(k.get("id", "")),
                name=k.get("name", ""),
                public_key=k.get("key", ""),
            ))
        return keys

    def ensure_ssh_key(self, public_key: str, name: str = "") -> SSHKeyRef:
        wanted = normalize_public_key(public_key)
        for key in self.list_public_keys():
            try:
                if normalize_public_key(key.public_key) == wanted:
                    logger.info(f"Reusing Hostinger public key {key.name} (id={key.key_id})")
                    return key
            except ValueError:
                continue

        key_name = name or f"xanthus-{public_key_fingerprint(public_key)[:12]}"
        data = self._unwrap(self._json("POST", "/public-keys", json={"name": key_name, "key": wanted}))
        logger.info(f"Created Hostinger public key {key_name} (id={data.get('id')})")
        return SSHKeyRef(
            provider=self.name,
            key_id=str(data.get("id", "")),
            name=data.get("name", key_name),
            public_key=data.get("key", wanted),
        )

    def attach_public_key(self, vm_id: str, key_ids: List[int]):
        """Attach existing public keys to a VM."""
        self._request("POST", f"/virtual-machines/{vm_id}/public-keys", json={"ids": key_ids})

    # ── Helpers ──────────────────────────────────────────────────

    def _parse_vm(self, data: Dict[str, Any]) -> ProviderInstance:
        """Parse API response into ProviderInstance."""
        ipv4 = data.get("ip_address") or ""
        if not ipv4:
            ips = data.get("ipv4") or data.get("ips") or []
            if ips and isinstance(ips[0], dict):
                ipv4 = ips[0].get("address", "")
        data_center = data.get("data_center")
        region = data_center.get("name", "") if isinstance(data_center, dict) else str(data_center or "")
        return ProviderInstance(
            provider=self.name,
            instance_id=str(data.get("id", "")),
            name=data.get("hostname", ""),
            status=data.get("state", "unknown"),
            ipv4=ipv4,
            size=str(data.get("plan", "") or ""),
            region=region,
            created_at=data.get("created_at"),
            raw=data,
        )

    def __repr__(self) -> str:
        return f"HostingerProvider(requests={self._request_count}, errors={self._error_count})"
