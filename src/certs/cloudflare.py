#!/usr/bin/env python3
"""
Cloudflare API Client — zones, edge TLS policy, origin certificates, DNS.

Rides the shared REST transport from vps.providers. Every response is the
standard ``{success, errors, result}`` envelope; ``success: false`` and
HTTP failures are raised as classified errors from xanthus.errors, with the
raw body kept in ``detail``.

Usage:
    cf = CloudflareClient(api_token="...")
    zone_id = cf.get_zone_id("example.com")
    cf.set_ssl_mode(zone_id, "strict")
    cert = cf.create_origin_certificate(csr_pem, ["example.com", "*.example.com"])
"""

import logging
import os
from typing import Optional, Dict, Any, List

import requests

from xanthus.errors import NotFoundError, ProviderError, classify_http_error
from vps.providers import RestProviderMixin

logger = logging.getLogger(__name__)

BASE_URL = "https://api.cloudflare.com/client/v4"
ROOT_CERT_URL = "https://developers.cloudflare.com/ssl/static/origin_ca_rsa_root.pem"

# 15 years, the maximum Cloudflare issues for origin certificates.
ORIGIN_CERT_VALIDITY_DAYS = 5475

SSL_MODES = ("off", "flexible", "full", "strict")


class CloudflareClient(RestProviderMixin):
    """
    Thin client over the Cloudflare v4 API.

    Auth: Bearer token from CLOUDFLARE_API_TOKEN env var or constructor arg.
    """

    name = "cloudflare"
    BASE_URL = BASE_URL
    DEFAULT_TIMEOUT = 30

    def __init__(
        self, api_token: str = None, timeout: int = None,
        root_cert_url: str = ROOT_CERT_URL,
    ):
        self.api_token = api_token or os.environ.get("CLOUDFLARE_API_TOKEN")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.root_cert_url = root_cert_url

        if not self.api_token:
            logger.warning("No Cloudflare API token configured. Set CLOUDFLARE_API_TOKEN env var.")

        self._request_count = 0
        self._error_count = 0

        logger.info(
            f"CloudflareClient initialized "
            f"(token={'configured' if self.api_token else 'missing'})"
        )

    def _error_message(self, data: Any) -> str:
        # {"errors": [{"code": 1003, "message": "..."}]}
        if not isinstance(data, dict):
            return ""
        errors = data.get("errors") or []
        parts = [
            f"Code {e.get('code')}: {e.get('message')}"
            for e in errors if isinstance(e, dict)
        ]
        return "; ".join(parts)

    def _result(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        """Call the API and return the envelope's ``result``."""
        data = self._json(method, path, json=body)

        if not isinstance(data, dict) or not data:
            self._error_count += 1
            raise ProviderError(
                "cloudflare: malformed response", ProviderError.TRANSIENT,
                provider=self.name, detail=str(data)[:300],
            )

        if not data.get("success", False):
            self._error_count += 1
            message = self._error_message(data) or "request failed"
            logger.warning(f"Cloudflare API unsuccessful: {method} {path}: {message}")
            raise ProviderError(
                f"cloudflare: {message}", ProviderError.PERMANENT,
                provider=self.name, detail=str(data)[:1000],
            )

        return data.get("result")

    # ── Zones & Settings ─────────────────────────────────────────

    def get_zone_id(self, domain: str) -> str:
        zones = self._result("GET", f"/zones?name={domain}") or []
        if not zones:
            raise NotFoundError(f"No Cloudflare zone found for domain {domain}")
        return zones[0]["id"]

    def set_ssl_mode(self, zone_id: str, mode: str = "strict"):
        if mode not in SSL_MODES:
            raise ValueError(f"unknown SSL mode: {mode}")
        self._result("PATCH", f"/zones/{zone_id}/settings/ssl", {"value": mode})
        logger.info(f"Zone {zone_id}: SSL mode -> {mode}")

    def set_always_https(self, zone_id: str, enabled: bool = True):
        value = "on" if enabled else "off"
        self._result("PATCH", f"/zones/{zone_id}/settings/always_use_https", {"value": value})
        logger.info(f"Zone {zone_id}: always_use_https -> {value}")

    # ── Origin Certificates ──────────────────────────────────────

    def create_origin_certificate(
        self, csr: str, hostnames: List[str],
        validity_days: int = ORIGIN_CERT_VALIDITY_DAYS,
    ) -> Dict[str, Any]:
        """Issue an origin certificate. Returns ``{"id", "certificate", ...}``."""
        result = self._result("POST", "/certificates", {
            "hostnames": hostnames,
            "requested_validity": validity_days,
            "request_type": "origin-rsa",
            "csr": csr,
        })
        if not result or not result.get("certificate"):
            raise ProviderError(
                "cloudflare: certificate response carried no certificate",
                ProviderError.PERMANENT, provider="cloudflare",
            )
        logger.info(f"Issued origin certificate {result.get('id', '?')} for {hostnames}")
        return result

    def fetch_root_certificate(self) -> str:
        """Download the Origin CA root used to complete the chain."""
        try:
            resp = requests.get(self.root_cert_url, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderError(
                "cloudflare: root certificate download failed", ProviderError.TRANSIENT,
                provider="cloudflare", detail=str(e),
            ) from e
        if resp.status_code != 200:
            raise classify_http_error(
                "cloudflare", resp.status_code, "root certificate download failed",
                detail=resp.text[:300],
            )
        return resp.text

    # ── Page Rules ───────────────────────────────────────────────

    @staticmethod
    def www_redirect_pattern(domain: str) -> str:
        return f"www.{domain}/*"

    def create_page_rule(self, zone_id: str, domain: str) -> Dict[str, Any]:
        """Redirect ``www.<domain>/*`` to ``https://<domain>/$1`` (301)."""
        return self._result("POST", f"/zones/{zone_id}/pagerules", {
            "targets": [{
                "target": "url",
                "constraint": {
                    "operator": "matches",
                    "value": self.www_redirect_pattern(domain),
                },
            }],
            "actions": [{
                "id": "forwarding_url",
                "value": {"url": f"https://{domain}/$1", "status_code": 301},
            }],
            "priority": 1,
            "status": "active",
        }) or {}

    def list_page_rules(self, zone_id: str) -> List[Dict[str, Any]]:
        return self._result("GET", f"/zones/{zone_id}/pagerules") or []

    def delete_page_rule(self, zone_id: str, rule_id: str):
        self._result("DELETE", f"/zones/{zone_id}/pagerules/{rule_id}")

    def delete_www_redirects(self, zone_id: str, domain: str) -> int:
        """Delete every page rule matching the www redirect for ``domain``."""
        pattern = self.www_redirect_pattern(domain)
        deleted = 0
        for rule in self.list_page_rules(zone_id):
            for target in rule.get("targets") or []:
                if (target.get("constraint") or {}).get("value") == pattern:
                    self.delete_page_rule(zone_id, rule["id"])
                    deleted += 1
                    break
        return deleted

    # ── DNS ──────────────────────────────────────────────────────

    def list_dns_records(self, zone_id: str) -> List[Dict[str, Any]]:
        return self._result("GET", f"/zones/{zone_id}/dns_records") or []

    def create_dns_record(
        self, zone_id: str, record_type: str, name: str, content: str,
        proxied: bool = True,
    ) -> Dict[str, Any]:
        return self._result("POST", f"/zones/{zone_id}/dns_records", {
            "type": record_type,
            "name": name,
            "content": content,
            "proxied": proxied,
            "ttl": 1,
        }) or {}

    def delete_dns_record(self, zone_id: str, record_id: str):
        self._result("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")

    def configure_dns(self, domain: str, ip: str) -> List[Dict[str, Any]]:
        """
        Point the apex, wildcard and www A records at ``ip`` (proxied).

        Existing A records for those names are replaced.
        """
        zone_id = self.get_zone_id(domain)
        names = [domain, f"*.{domain}", f"www.{domain}"]

        for record in self.list_dns_records(zone_id):
            if record.get("type") == "A" and record.get("name", "").rstrip(".") in names:
                logger.info(f"Replacing A record {record['name']} -> {record.get('content')}")
                self.delete_dns_record(zone_id, record["id"])

        created = [self.create_dns_record(zone_id, "A", name, ip) for name in names]
        logger.info(f"DNS for {domain} -> {ip} ({len(created)} A records)")
        return created
