#!/usr/bin/env python3
"""
Control Plane — the one object that owns every long-lived component.

Built explicitly from a ControlPlaneConfig and passed around, never
reached through module globals. ``start()`` launches the background
sweepers; ``shutdown()`` stops them, closes every SSH connection and
the state store.

Usage:
    with ControlPlane(load_config("config/xanthus.yml")) as cp:
        record = cp.create_vps({"name": "test1", "type": "small", "region": "nbg1"})
        ...
        cp.delete_vps(record.id)
"""

import logging
from typing import Optional, Dict, Any, List, Tuple, Union

from certs.cloudflare import CloudflareClient
from certs.pipeline import CertificatePipeline, DomainCertificate
from terminal.bridge import TerminalBridge
from terminal.sessions import SessionManager, TerminalSession
from terminal.tokens import TokenService
from vps import ssh_ops
from vps.hetzner import HetznerProvider
from vps.hostinger import HostingerProvider
from vps.keys import SSHKeyStore
from vps.lifecycle import InstanceRecord, InstanceState, LifecycleManager
from vps.providers import InstanceSpec, PowerAction, ProviderRegistry
from vps.ssh_bridge import SSHConnection, SSHConnectionCache
from vps.state import StateStore

from .config import ControlPlaneConfig
from .errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# States in which an instance accepts interactive shells and workloads.
OPERABLE_STATES = (InstanceState.SSH_READY, InstanceState.DOMAIN_CONFIGURED, InstanceState.RUNNING)


class ControlPlane:
    """Owns the store, providers, SSH cache, lifecycle, certificates and terminals."""

    def __init__(
        self,
        config: ControlPlaneConfig,
        store: StateStore = None,
        providers: ProviderRegistry = None,
        ssh: SSHConnectionCache = None,
        cloudflare: CloudflareClient = None,
        ops=ssh_ops,
    ):
        self.config = config
        self.ops = ops

        if not config.encryption_token:
            logger.warning("No encryption token configured; stored secrets cannot be written")

        self.store = store or StateStore(str(config.db_path))

        if providers is None:
            providers = ProviderRegistry()
            providers.register(HetznerProvider(api_token=config.hetzner.api_token or None))
            providers.register(HostingerProvider(api_token=config.hostinger.api_token or None))
        self.providers = providers

        self.ssh = ssh or SSHConnectionCache(
            username=config.ssh.user,
            port=config.ssh.port,
            key_path=config.ssh.private_key_path or None,
            connect_timeout=config.ssh.connect_timeout,
            connect_attempts=config.ssh.connect_attempts,
            stale_after_sec=config.ssh.stale_after_sec,
        )
        self.keys = SSHKeyStore(self.store, config.encryption_token)

        self.cloudflare = cloudflare or CloudflareClient(
            api_token=config.cloudflare.api_token or None,
            root_cert_url=config.cloudflare.root_cert_url,
        )
        self.certs = CertificatePipeline(
            self.store, self.cloudflare, self._connect_address,
            config.encryption_token, ops=ops,
        )

        lc = config.lifecycle
        self.lifecycle = LifecycleManager(
            self.store, self.providers, self.ssh, self.keys,
            ops=ops,
            domain_configurer=self.certs.configure_domain_ssl,
            provision_timeout=lc.provision_timeout_sec,
            bootstrap_timeout=lc.bootstrap_timeout_sec,
            poll_initial=lc.poll_initial_sec,
            poll_max=lc.poll_max_sec,
            workers=lc.workers,
            ssh_user=config.ssh.user,
        )

        tc = config.terminal
        self.sessions = SessionManager(
            idle_timeout=tc.idle_timeout_sec, sweep_interval=tc.sweep_interval_sec, store=self.store,
        )
        self.tokens = None
        if config.token_secret:
            self.tokens = TokenService(
                config.token_secret,
                access_ttl=config.access_token_ttl_sec,
                refresh_ttl=config.refresh_token_ttl_sec,
            )
        self.bridge = TerminalBridge(
            self.sessions, self._open_channel,
            auth_tokens=config.auth_tokens, tokens=self.tokens,
            host=tc.host, port=tc.port,
        )

        self._started = False
        logger.info(f"ControlPlane initialized (state={self.store.db_path})")

    # ── Lifecycle of the control plane itself ────────────────────

    def start(self, serve_terminal: bool = True):
        if self._started:
            return
        self.ssh.start_reaper()
        self.sessions.start_sweeper()
        if serve_terminal:
            self.bridge.start()
        self._started = True
        logger.info("ControlPlane started")

    def shutdown(self):
        self.bridge.stop()
        self.sessions.stop_sweeper()
        self.sessions.close_all()
        self.lifecycle.shutdown()
        self.ssh.stop_reaper()
        self.ssh.close_all()
        self.store.close()
        self._started = False
        logger.info("ControlPlane shut down")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    # ── SSH plumbing ─────────────────────────────────────────────

    def _connect_address(self, ipv4: str) -> SSHConnection:
        record = self.lifecycle.find_by_address(ipv4)
        if record is not None:
            return self.lifecycle.connect(record.id)
        return self.ssh.get_connection(ipv4)

    def _operable(self, record_id: str) -> InstanceRecord:
        record = self.lifecycle.get_instance(record_id)
        if record is None:
            raise NotFoundError(f"Instance {record_id} not found")
        if record.status not in OPERABLE_STATES:
            raise ConflictError(f"Instance {record.name} is {record.state}, not ready for use")
        return record

    def _connection(self, record_id: str) -> SSHConnection:
        self._operable(record_id)
        return self.lifecycle.connect(record_id)

    def _open_channel(self, session: TerminalSession):
        tc = self.config.terminal
        return self._connection(session.instance_id).open_shell(tc.term, tc.cols, tc.rows)

    # ── Instances ────────────────────────────────────────────────

    def create_vps(self, spec: Union[InstanceSpec, Dict[str, Any]], wait: bool = False) -> InstanceRecord:
        """
        Validate and reserve the instance, then provision it.

        By default provisioning continues in the background and the
        Requested record is returned; poll get_vps() for progress.
        ``wait=True`` returns only once the instance is Running.
        """
        if isinstance(spec, dict):
            spec = InstanceSpec.from_dict({"provider": self.config.default_provider, **spec})
        if wait:
            return self.lifecycle.create_instance(spec)
        record, _ = self.lifecycle.submit_create(spec)
        return record

    def get_vps(self, record_id: str) -> Optional[InstanceRecord]:
        return self.lifecycle.get_instance(record_id)

    def list_vps(self) -> List[InstanceRecord]:
        return self.lifecycle.list_instances()

    def retry_vps(self, record_id: str) -> InstanceRecord:
        return self.lifecycle.retry_instance(record_id)

    def delete_vps(self, record_id: str):
        """Delete an instance. Deleting an unknown or already deleted id succeeds."""
        closed = self.sessions.close_for_instance(record_id)
        if closed:
            logger.info(f"Closed {closed} terminal sessions on {record_id}")
        self.lifecycle.delete_instance(record_id)

    def power_action(self, record_id: str, action: Union[PowerAction, str]) -> InstanceRecord:
        record = self.lifecycle.power_action(record_id, action)
        if record.status != InstanceState.RUNNING or action in (PowerAction.REBOOT, "reboot"):
            # Shells on the old boot are dead.
            self.sessions.close_for_instance(record_id, reason="power action")
        return record

    def vps_cost(self, record_id: str) -> Dict[str, Any]:
        return self.lifecycle.accrued_cost(record_id)

    def vps_health(self, record_id: str) -> ssh_ops.HealthReport:
        return self.ops.health_check(self._connection(record_id))

    def deploy_manifest(self, record_id: str, manifest, name: str = "manifest",
                        namespace: str = None):
        return self.ops.deploy_manifest(self._connection(record_id), manifest, name=name, namespace=namespace)

    def install_chart(self, record_id: str, release: str, chart: str,
                      values: Dict[str, Any] = None, namespace: str = "default",
                      version: str = None, repo: Optional[Dict[str, str]] = None) -> ssh_ops.ReleaseStatus:
        return self.ops.install_or_upgrade_chart(
            self._connection(record_id), release, chart,
            values=values, namespace=namespace, version=version, repo=repo,
        )

    def uninstall_chart(self, record_id: str, release: str, namespace: str = "default"):
        return self.ops.uninstall_chart(self._connection(record_id), release, namespace=namespace)

    def fetch_logs(self, record_id: str, selector: str = "unit:k3s", lines: int = 100) -> List[ssh_ops.LogLine]:
        return self.ops.fetch_logs(self._connection(record_id), selector, lines=lines)

    def reconcile(self) -> Dict[str, int]:
        """Retry failed compensations for instances and domains; summed counts."""
        results = [self.lifecycle.reconcile_orphans(), self.certs.reconcile_orphans()]
        return {
            "cleared": sum(r["cleared"] for r in results),
            "failed": sum(r["failed"] for r in results),
        }

    # ── Domains ──────────────────────────────────────────────────

    def configure_domain_ssl(self, domain: str, instance_ip: str) -> DomainCertificate:
        return self.certs.configure_domain_ssl(domain, instance_ip)

    def configure_dns(self, domain: str, instance_ip: str) -> List[Dict[str, Any]]:
        return self.certs.configure_dns(domain, instance_ip)

    def remove_domain_configuration(self, domain: str) -> bool:
        return self.certs.remove_domain_configuration(domain)

    def list_domains(self) -> List[str]:
        return self.certs.list_domains()

    # ── Terminals ────────────────────────────────────────────────

    def open_terminal_session(self, record_id: str, user: str) -> str:
        """Create a session for ``user`` on an operable instance. Returns its id."""
        record = self._operable(record_id)
        session = self.sessions.create(record.id, user, record.ipv4, record.ssh_user)
        self.store.log("terminal", "action", "open_session", target=record.id,
                       detail=f"user={user} session={session.id[:8]}")
        return session.id

    def close_terminal_session(self, session_id: str, user: str) -> bool:
        self.sessions.get_for_user(session_id, user)
        return self.sessions.close(session_id, "closed by user")

    def list_terminal_sessions(self, user: str) -> List[TerminalSession]:
        return self.sessions.list_for_user(user)

    def issue_terminal_tokens(self, user: str) -> Tuple[str, str]:
        """Signed ``(access, refresh)`` pair the bridge accepts for ``user``."""
        if self.tokens is None:
            raise ConflictError("Signed terminal tokens need auth.token_secret configured")
        pair = self.tokens.issue_pair(user)
        self.store.log("terminal", "action", "issue_tokens", target=user)
        return pair

    def refresh_terminal_tokens(self, refresh_token: str) -> Tuple[str, str]:
        if self.tokens is None:
            raise ConflictError("Signed terminal tokens need auth.token_secret configured")
        return self.tokens.refresh(refresh_token)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "instances": self.lifecycle.get_stats(),
            "domains": self.certs.get_stats(),
            "ssh": self.ssh.get_stats(),
            "terminal": self.bridge.get_stats(),
            "store": self.store.get_stats(),
        }
