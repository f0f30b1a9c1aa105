"""
Certificate Pipeline — bare domain to trusted HTTPS endpoint on an instance.

Steps, in order, each with a compensating action where one exists:

    1. generate_csr        RSA 2048 key + CSR for domain and *.domain
    2. issue_certificate   Cloudflare origin certificate (15 years)
    3. build_chain         leaf + Origin CA root, leaf first
    4. edge_policy         SSL mode strict, always-HTTPS on    (undo: flexible, off)
    5. redirect_rule       www.<domain>/* -> https://<domain>  (undo: delete rule)
    6. persist             encrypted record under domains/<domain> (undo: delete)
    7. push_to_instance    chain + key onto the instance over SSH

The first failing step stops the run; completed compensations run in
reverse and the caller gets one PipelineError naming the step. Issued
certificates are never revoked.
"""

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, asdict
from types import ModuleType
from typing import Optional, Dict, Any, List, Callable, Tuple

from vps import ssh_ops
from vps.state import NS_DOMAINS, StateStore
from xanthus.errors import ControlPlaneError, PipelineError, ValidationError

from . import crypto
from .cloudflare import CloudflareClient

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")

WORKFLOW_CONFIGURE = "configure_domain_ssl"
WORKFLOW_REMOVE = "remove_domain_configuration"

ORPHAN_KIND = "domain_step"


@dataclass
class DomainCertificate:
    domain: str
    zone_id: str
    certificate_id: str
    certificate: str
    private_key: str
    instance_ip: str = ""
    ssl_mode: str = "strict"
    always_use_https: bool = True
    page_rule_created: bool = False
    configured_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("private_key", None)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainCertificate":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


def build_chain(leaf: str, root: str) -> str:
    """Leaf first, then the issuer root."""
    return leaf.strip() + "\n" + root.strip() + "\n"


class CertificatePipeline:
    """Runs and reverses domain SSL configuration, one domain at a time."""

    ACTOR = "certs"

    def __init__(
        self,
        store: StateStore,
        cloudflare: CloudflareClient,
        connect: Callable[[str], Any],
        encryption_token: str,
        ops: ModuleType = ssh_ops,
    ):
        self.store = store
        self.cloudflare = cloudflare
        self.connect = connect
        self._token = encryption_token
        self.ops = ops

        self._registry_lock = threading.Lock()
        self._domain_locks: Dict[str, threading.Lock] = {}
        self._issued = 0

    def _domain_lock(self, domain: str) -> threading.Lock:
        with self._registry_lock:
            return self._domain_locks.setdefault(domain, threading.Lock())

    @staticmethod
    def normalize_domain(domain: str) -> str:
        domain = (domain or "").strip().lower().rstrip(".")
        if not _DOMAIN_RE.match(domain):
            raise ValidationError(f"Invalid domain name: {domain!r}")
        return domain

    def _audit(self, action: str, target: str, success: bool, detail: str = ""):
        self.store.log(self.ACTOR, "action", action, target=target, success=success, detail=detail)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {action} {target}: {'ok' if success else 'FAIL'} {detail}")

    # ── Storage ──────────────────────────────────────────────────

    def _save(self, record: DomainCertificate):
        payload = crypto.encrypt(json.dumps(asdict(record)), self._token)
        self.store.put(NS_DOMAINS, record.domain, {"domain": record.domain, "payload": payload})

    def get_domain_config(self, domain: str) -> Optional[DomainCertificate]:
        """Stored record with certificate and key decrypted, or None."""
        data = self.store.get(NS_DOMAINS, self.normalize_domain(domain))
        if not data:
            return None
        return DomainCertificate.from_dict(json.loads(crypto.decrypt(data["payload"], self._token)))

    def list_domains(self) -> List[str]:
        return sorted(self.store.list(NS_DOMAINS))

    # ── Configure ────────────────────────────────────────────────

    def configure_domain_ssl(self, domain: str, instance_ip: str) -> DomainCertificate:
        """
        Run steps 1-7 for ``domain`` against ``instance_ip``.

        A domain that is already configured is not issued again: the
        stored material is pushed to ``instance_ip`` if it changed, and
        the existing record is returned. Concurrent calls for the same
        domain queue on a per-domain lock.
        """
        domain = self.normalize_domain(domain)
        if not instance_ip:
            raise ValidationError("Instance address is required")

        with self._domain_lock(domain):
            existing = self.get_domain_config(domain)
            if existing is not None:
                if existing.instance_ip != instance_ip:
                    self._step(WORKFLOW_CONFIGURE, "push_to_instance", [],
                               lambda: self._push(existing, instance_ip))
                    existing.instance_ip = instance_ip
                    self._save(existing)
                    self._audit("domain_repush", domain, True, instance_ip)
                logger.info(f"Domain {domain} already configured; reusing certificate")
                return existing
            return self._configure(domain, instance_ip)

    def _configure(self, domain: str, instance_ip: str) -> DomainCertificate:
        undo: List[Tuple[str, Callable[[], Any]]] = []
        wf = WORKFLOW_CONFIGURE
        ctx: Dict[str, Any] = {"domain": domain}

        private_key, csr = self._step(wf, "generate_csr", undo,
                                      lambda: crypto.generate_private_key_and_csr(domain), ctx)

        def issue():
            zone = self.cloudflare.get_zone_id(domain)
            cert = self.cloudflare.create_origin_certificate(csr, [domain, f"*.{domain}"])
            return zone, cert

        zone_id, cert = self._step(wf, "issue_certificate", undo, issue, ctx)
        self._issued += 1
        ctx["zone_id"] = zone_id

        chain = self._step(wf, "build_chain", undo,
                           lambda: build_chain(cert["certificate"],
                                               self.cloudflare.fetch_root_certificate()), ctx)

        record = DomainCertificate(
            domain=domain,
            zone_id=zone_id,
            certificate_id=str(cert.get("id", "")),
            certificate=chain,
            private_key=private_key,
            instance_ip=instance_ip,
            ssl_mode="flexible",
            always_use_https=False,
        )

        def edge_policy():
            self.cloudflare.set_ssl_mode(zone_id, "strict")
            record.ssl_mode = "strict"
            self.cloudflare.set_always_https(zone_id, True)
            record.always_use_https = True

        # Registered first so a half-applied policy is still reverted.
        undo.append(("edge_policy", lambda: self._reset_edge_policy(record)))
        self._step(wf, "edge_policy", undo, edge_policy, ctx)

        def redirect_rule():
            self.cloudflare.create_page_rule(zone_id, domain)
            record.page_rule_created = True

        self._step(wf, "redirect_rule", undo, redirect_rule, ctx)
        undo.append(("redirect_rule", lambda: self.cloudflare.delete_www_redirects(zone_id, domain)))

        record.configured_at = time.time()
        self._step(wf, "persist", undo, lambda: self._save(record), ctx)
        undo.append(("persist", lambda: self.store.delete(NS_DOMAINS, domain)))

        self._step(wf, "push_to_instance", undo, lambda: self._push(record, instance_ip), ctx)

        self._audit(wf, domain, True, f"certificate={record.certificate_id} ip={instance_ip}")
        return record

    def _step(self, workflow: str, step: str, undo: List[Tuple[str, Callable[[], Any]]],
              fn: Callable[[], Any], ctx: Dict[str, Any] = None) -> Any:
        try:
            return fn()
        except Exception as e:
            compensated = self._compensate(workflow, step, undo, ctx or {}) if undo else None
            self._audit(workflow, step, False, str(e))
            raise PipelineError(workflow, step, e, compensated=compensated) from e

    def _compensate(self, workflow: str, failed_step: str,
                    undo: List[Tuple[str, Callable[[], Any]]], ctx: Dict[str, Any]) -> bool:
        """Run compensations newest first. False if any of them failed."""
        ok = True
        for name, action in reversed(undo):
            try:
                action()
            except Exception as e:
                ok = False
                logger.warning(f"{workflow}: compensation for {name} failed after {failed_step}: {e}")
                self.store.mark_orphan(
                    ORPHAN_KIND, f"{ctx.get('domain', '')}:{name}",
                    provider="cloudflare", detail=str(e),
                    context={**ctx, "undo_step": name, "failed_step": failed_step},
                )
        return ok

    # ── Reconciliation ───────────────────────────────────────────

    def _undo_action(self, step: str, domain: str, zone_id: str) -> Optional[Callable[[], Any]]:
        if step == "redirect_rule":
            return lambda: self.cloudflare.delete_www_redirects(zone_id, domain)
        if step == "edge_policy":
            def reset():
                self.cloudflare.set_ssl_mode(zone_id, "flexible")
                self.cloudflare.set_always_https(zone_id, False)
            return reset
        if step == "persist":
            return lambda: self.store.delete(NS_DOMAINS, domain)
        return None

    def reconcile_orphans(self) -> Dict[str, int]:
        """
        Retry compensations that failed during domain configuration.

        A Cloudflare marker for a domain that has since been configured
        successfully is cleared without touching Cloudflare: undoing it
        would break the live configuration. Records left by a failed
        ``persist`` undo are deleted first, so they never count as live.
        """
        cleared = failed = 0
        orphans = [o for o in self.store.list_orphans() if o.get("kind") == ORPHAN_KIND]
        orphans.sort(key=lambda o: o.get("undo_step") != "persist")
        for orphan in orphans:
            domain = orphan.get("domain", "")
            step = orphan.get("undo_step", "")
            action = self._undo_action(step, domain, orphan.get("zone_id", ""))
            if not domain or action is None:
                failed += 1
                logger.warning(f"Orphan {orphan['resource_id']} cannot be reconciled: missing context")
                continue

            with self._domain_lock(domain):
                if step == "persist" or self.store.get(NS_DOMAINS, domain) is None:
                    try:
                        action()
                    except (ControlPlaneError, OSError) as e:
                        failed += 1
                        logger.warning(f"Orphan {orphan['resource_id']} still not undone: {e}")
                        continue
                self.store.clear_orphan(ORPHAN_KIND, orphan["resource_id"])
                cleared += 1

        if cleared or failed:
            self._audit("reconcile", "domains", failed == 0, f"cleared={cleared} failed={failed}")
        return {"cleared": cleared, "failed": failed}

    def _reset_edge_policy(self, record: DomainCertificate):
        if record.ssl_mode == "strict":
            self.cloudflare.set_ssl_mode(record.zone_id, "flexible")
            record.ssl_mode = "flexible"
        if record.always_use_https:
            self.cloudflare.set_always_https(record.zone_id, False)
            record.always_use_https = False

    def _push(self, record: DomainCertificate, instance_ip: str) -> str:
        conn = self.connect(instance_ip)
        return self.ops.push_tls_material(conn, record.domain, record.certificate, record.private_key)

    # ── Remove ───────────────────────────────────────────────────

    def remove_domain_configuration(self, domain: str) -> bool:
        """
        Reverse steps 4-6: drop the redirect, restore the default edge
        policy and delete the stored record. The origin certificate is
        left to expire. Returns False if nothing was configured.
        """
        domain = self.normalize_domain(domain)
        wf = WORKFLOW_REMOVE

        with self._domain_lock(domain):
            record = self.get_domain_config(domain)
            if record is None:
                return False

            if record.page_rule_created:
                self._step(wf, "redirect_rule", [],
                           lambda: self.cloudflare.delete_www_redirects(record.zone_id, domain))
            self._step(wf, "edge_policy", [], lambda: self._reset_edge_policy(record))
            self._step(wf, "persist", [], lambda: self.store.delete(NS_DOMAINS, domain))

        self._audit(wf, domain, True)
        return True

    # ── DNS ──────────────────────────────────────────────────────

    def configure_dns(self, domain: str, instance_ip: str) -> List[Dict[str, Any]]:
        """Point the domain's A records at an instance."""
        domain = self.normalize_domain(domain)
        with self._domain_lock(domain):
            try:
                records = self.cloudflare.configure_dns(domain, instance_ip)
            except Exception as e:
                self._audit("configure_dns", domain, False, str(e))
                raise
        self._audit("configure_dns", domain, True, instance_ip)
        return records

    def get_stats(self) -> Dict[str, Any]:
        return {
            "domains": len(self.list_domains()),
            "issued_this_process": self._issued,
        }
