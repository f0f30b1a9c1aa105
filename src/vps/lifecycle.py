#!/usr/bin/env python3
"""
VPS Lifecycle Manager — drives every instance through its state machine

Requested → Provisioning → NetworkReady → Bootstrapping → SSHReady
          → (DomainConfigured) → Running ⇄ PoweredOff, Running → Rebooting → Running
Deleting → Deleted from any state; ProvisionFailed / BootstrapTimeout /
ConfigFailed are terminal until the caller retries.

Capabilities:
- Multi-provider creation with content-addressed SSH keys
- Readiness and bootstrap polling with bounded backoff
- Compensating delete on failure, orphan markers when that fails too
- Per-instance serialization; different instances never block each other
- Full audit trail of every transition in the state store

Usage:
    lm = LifecycleManager(store, registry, ssh_cache, keys)
    record = lm.create_instance(InstanceSpec(name="k3s-1", size="small", region="nbg1"))
    lm.power_action(record.id, PowerAction.REBOOT)
    lm.delete_instance(record.id)
"""

import logging
import re
import secrets
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from types import ModuleType
from typing import Optional, Dict, Any, List, Callable, Tuple

from xanthus.errors import (
    AuthenticationError, ConflictError, ControlPlaneError, NotFoundError,
    OperationTimeoutError, PipelineError, ProviderError, RemoteCommandError,
    SSHError, ValidationError, error_result,
)
from xanthus.retry import Backoff, poll_until, retry_call

from . import ssh_ops
from .bootstrap import BOOTSTRAP_FAILED
from .keys import SSHKeyStore
from .providers import (
    InstanceSpec, PowerAction, ProviderInstance, ProviderRegistry, is_transient,
)
from .ssh_bridge import SSHConnectionCache
from .state import NS_INSTANCES, StateStore

logger = logging.getLogger(__name__)

# Servers whose create call failed ambiguously; resource_id is the name.
ORPHAN_BY_NAME = "instance_name"


# ── State Machine ────────────────────────────────────────────────

class InstanceState(Enum):
    REQUESTED = "Requested"
    PROVISIONING = "Provisioning"
    NETWORK_READY = "NetworkReady"
    BOOTSTRAPPING = "Bootstrapping"
    SSH_READY = "SSHReady"
    DOMAIN_CONFIGURED = "DomainConfigured"
    RUNNING = "Running"
    POWERED_OFF = "PoweredOff"
    REBOOTING = "Rebooting"
    DELETING = "Deleting"
    DELETED = "Deleted"
    PROVISION_FAILED = "ProvisionFailed"
    BOOTSTRAP_TIMEOUT = "BootstrapTimeout"
    CONFIG_FAILED = "ConfigFailed"


S = InstanceState

TRANSITIONS = {
    S.REQUESTED: {S.PROVISIONING, S.PROVISION_FAILED},
    S.PROVISIONING: {S.NETWORK_READY, S.PROVISION_FAILED, S.BOOTSTRAP_TIMEOUT},
    S.NETWORK_READY: {S.BOOTSTRAPPING},
    S.BOOTSTRAPPING: {S.SSH_READY, S.BOOTSTRAP_TIMEOUT, S.CONFIG_FAILED},
    S.SSH_READY: {S.DOMAIN_CONFIGURED, S.RUNNING, S.CONFIG_FAILED},
    S.DOMAIN_CONFIGURED: {S.RUNNING},
    S.RUNNING: {S.POWERED_OFF, S.REBOOTING},
    S.POWERED_OFF: {S.RUNNING},
    S.REBOOTING: {S.RUNNING},
    S.PROVISION_FAILED: set(),
    S.BOOTSTRAP_TIMEOUT: set(),
    S.CONFIG_FAILED: set(),
    S.DELETING: {S.DELETED},
    S.DELETED: set(),
}

# Explicit caller retry out of a failure state.
RETRY_TRANSITIONS = {
    S.PROVISION_FAILED: {S.PROVISIONING, S.BOOTSTRAPPING},
    S.BOOTSTRAP_TIMEOUT: {S.PROVISIONING, S.BOOTSTRAPPING},
    S.CONFIG_FAILED: {S.BOOTSTRAPPING, S.SSH_READY},
}

FAILURE_STATES = set(RETRY_TRANSITIONS)

_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")


def can_transition(current: InstanceState, new: InstanceState, retry: bool = False) -> bool:
    if new == S.DELETING:
        return current != S.DELETED
    if new in TRANSITIONS[current]:
        return True
    return retry and new in RETRY_TRANSITIONS.get(current, set())


def _reached(record: "InstanceRecord", state: InstanceState) -> bool:
    return any(h["state"] == state.value for h in record.history)


# ── Data Models ──────────────────────────────────────────────────

@dataclass
class InstanceRecord:
    """Everything the control plane knows about one instance."""
    id: str
    name: str
    provider: str
    size: str
    region: str
    state: str = S.REQUESTED.value
    instance_id: str = ""
    ipv4: str = ""
    ssh_user: str = "root"
    ssh_key_fingerprint: str = ""
    ssh_key_ref: str = ""
    domain: Optional[str] = None
    timezone: str = ""
    hourly_rate: float = 0.0
    monthly_rate: float = 0.0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    provider_released: bool = False
    history: List[Dict[str, Any]] = field(default_factory=list)
    last_error: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> InstanceState:
        return InstanceState(self.state)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceRecord":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


# ── Lifecycle Manager ────────────────────────────────────────────

class LifecycleManager:
    """
    The orchestrator. Owns InstanceRecords exclusively; every mutation
    goes through _transition().

    Concurrency: one operation lock per instance id (so a delete cannot
    race a power action); a short registry lock guards only the lock
    table and name uniqueness check and is never held across network calls.
    """

    ACTOR = "lifecycle"

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        ssh: SSHConnectionCache,
        keys: SSHKeyStore,
        ops: ModuleType = ssh_ops,
        domain_configurer: Callable[[str, str], Any] = None,
        provision_timeout: float = 300,
        bootstrap_timeout: float = 900,
        poll_initial: float = 2.0,
        poll_max: float = 30.0,
        provider_backoff: Backoff = None,
        workers: int = 4,
        ssh_user: str = "root",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.providers = providers
        self.ssh = ssh
        self.keys = keys
        self.ops = ops
        self.domain_configurer = domain_configurer
        self.provision_timeout = provision_timeout
        self.bootstrap_timeout = bootstrap_timeout
        self.poll_initial = poll_initial
        self.poll_max = poll_max
        self.provider_backoff = provider_backoff or Backoff(initial=1.0, max_delay=10.0, max_attempts=4)
        self.ssh_user = ssh_user
        self._sleep = sleep
        self._clock = clock

        self._registry_lock = threading.Lock()
        self._op_locks: Dict[str, threading.RLock] = {}
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lifecycle")

        logger.info(f"LifecycleManager online (providers={providers.names()})")

    # ── Locking ──────────────────────────────────────────────────

    def _op_lock(self, record_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._op_locks.setdefault(record_id, threading.RLock())

    def _drop_lock(self, record_id: str):
        with self._registry_lock:
            self._op_locks.pop(record_id, None)

    # ── Records ──────────────────────────────────────────────────

    def get_instance(self, record_id: str) -> Optional[InstanceRecord]:
        data = self.store.get(NS_INSTANCES, record_id)
        return InstanceRecord.from_dict(data) if data else None

    def _require(self, record_id: str) -> InstanceRecord:
        record = self.get_instance(record_id)
        if record is None:
            raise NotFoundError(f"Instance {record_id} not found")
        return record

    def list_instances(self) -> List[InstanceRecord]:
        records = [InstanceRecord.from_dict(d) for d in self.store.list(NS_INSTANCES).values()]
        return sorted(records, key=lambda r: r.created_at)

    def find_by_address(self, ipv4: str) -> Optional[InstanceRecord]:
        for record in self.list_instances():
            if record.ipv4 == ipv4 and record.status != S.DELETED:
                return record
        return None

    def connect(self, record_id: str):
        """Cached SSH connection to an instance, using the key it was created with."""
        record = self._require(record_id)
        if not record.ipv4:
            raise ConflictError(f"Instance {record.name} has no address yet")
        key = self.keys.get(record.ssh_key_fingerprint)
        return self.ssh.get_connection(record.ipv4, record.ssh_user, key.private_key)

    def _save(self, record: InstanceRecord):
        record.updated_at = time.time()
        self.store.put(NS_INSTANCES, record.id, record.to_dict())

    def _transition(self, record: InstanceRecord, new: InstanceState,
                    detail: str = "", retry: bool = False):
        current = record.status
        if not can_transition(current, new, retry=retry):
            raise ConflictError(
                f"Instance {record.name} cannot go from {current.value} to {new.value}"
            )
        record.state = new.value
        record.history.append({"state": new.value, "at": time.time()})
        self._save(record)
        self._audit("transition", record.id, True, f"{current.value} -> {new.value} {detail}".strip())

    def _audit(self, action: str, target: str, success: bool,
               detail: str = "", context: Dict[str, Any] = None):
        """Record an action in the event ledger."""
        self.store.log(self.ACTOR, "transition" if action == "transition" else "action",
                       action, target=target, success=success, detail=detail, context=context)
        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"[AUDIT] {action} {target}: {'ok' if success else 'FAIL'} {detail}")

    def _fail(self, record: InstanceRecord, state: InstanceState, step: str,
              exc: Exception, compensate: bool) -> PipelineError:
        """Move to a failure state, optionally compensate, build the aggregated error."""
        record.last_error = {**error_result(exc), "step": step}
        self._transition(record, state, detail=f"at {step}")
        compensated = None
        if compensate and record.instance_id:
            compensated = self._compensate(record)
        err = PipelineError("create_instance", step, exc, compensated=compensated)
        record.last_error = {**err.to_dict(), "step": step}
        self._save(record)
        self._audit("create", record.id, False, str(err))
        return err

    def _compensate(self, record: InstanceRecord) -> bool:
        """Best-effort release of provider resources after a failed create."""
        provider = self.providers.get(record.provider)
        try:
            self._provider_call(lambda: provider.delete_instance(record.instance_id),
                                f"compensating delete {record.instance_id}")
        except Exception as e:
            self.store.mark_orphan(
                "instance", record.instance_id, provider=record.provider,
                detail=f"record={record.id} name={record.name}: {e}",
            )
            logger.error(f"Compensating delete of {record.instance_id} failed: {e}")
            return False
        if record.ipv4:
            self.ssh.invalidate_host(record.ipv4)
        record.provider_released = True
        self._audit("compensate", record.id, True, f"released {record.provider}:{record.instance_id}")
        return True

    def _provider_call(self, fn: Callable[[], Any], describe: str) -> Any:
        return retry_call(fn, self.provider_backoff, retry_if=is_transient,
                          describe=describe, sleep=self._sleep, clock=self._clock)

    # ── Creation ─────────────────────────────────────────────────

    def validate(self, spec: InstanceSpec):
        if not spec.name or not _NAME_RE.match(spec.name):
            raise ValidationError(
                f"Invalid instance name {spec.name!r}",
                detail="lowercase letters, digits and hyphens, at most 63 characters",
            )
        self.providers.get(spec.provider).validate_spec(spec)

    def _reserve(self, spec: InstanceSpec) -> InstanceRecord:
        """Validate and persist a Requested record; names are unique."""
        self.validate(spec)
        with self._registry_lock:
            taken = {r.name for r in self.list_instances() if r.status != S.DELETED}
            if spec.name in taken:
                raise ConflictError(f"An instance named {spec.name!r} already exists")
            record = InstanceRecord(
                id=secrets.token_hex(8),
                name=spec.name,
                provider=spec.provider,
                size=spec.size,
                region=spec.region,
                domain=spec.domain,
                timezone=spec.timezone,
                ssh_user=self.ssh_user,
            )
            record.history.append({"state": record.state, "at": record.created_at})
            self._save(record)
        self._audit("request", record.id, True, f"{spec.provider} {spec.size} {spec.region} {spec.name}")
        return record

    def create_instance(self, spec: InstanceSpec) -> InstanceRecord:
        """Create and bootstrap an instance; returns the Running record."""
        record = self._reserve(spec)
        return self._run_create(record.id, spec)

    def submit_create(self, spec: InstanceSpec) -> Tuple[InstanceRecord, Future]:
        """
        Validate and reserve synchronously, then provision in the
        background. The caller polls get_instance(); abandoning the
        future does not abort provisioning.
        """
        record = self._reserve(spec)
        future = self._executor.submit(self._run_create_logged, record.id, spec)
        return record, future

    def _run_create_logged(self, record_id: str, spec: InstanceSpec) -> Optional[InstanceRecord]:
        try:
            return self._run_create(record_id, spec)
        except ControlPlaneError as e:
            logger.error(f"Background create of {record_id} failed: {e}")
            return None

    def _run_create(self, record_id: str, spec: InstanceSpec) -> InstanceRecord:
        with self._op_lock(record_id):
            record = self._require(record_id)
            self._provision(record, spec)
            self._await_network(record)
            self._bootstrap(record)
            self._finish(record)
            self._audit("create", record.id, True, f"{record.name} at {record.ipv4}")
            return record

    def _provision(self, record: InstanceRecord, spec: InstanceSpec, retry: bool = False):
        provider = self.providers.get(record.provider)
        self._transition(record, S.PROVISIONING, detail="retry" if retry else "", retry=retry)
        try:
            key = self.keys.active()
            key_ref = self._provider_call(
                lambda: provider.ensure_ssh_key(key.public_key),
                f"ensure ssh key on {provider.name}",
            )
            record.ssh_key_fingerprint = key.fingerprint
            record.ssh_key_ref = key_ref.key_id
            self._save(record)

            created = self._create_on_provider(provider, replace(spec, ssh_key_ref=key_ref.key_id))
        except Exception as e:
            raise self._fail(record, S.PROVISION_FAILED, "provision", e, compensate=False) from e

        record.instance_id = created.instance_id
        record.ipv4 = created.ipv4
        record.hourly_rate = created.hourly_rate
        record.monthly_rate = created.monthly_rate
        self._save(record)

    def _create_on_provider(self, provider, spec: InstanceSpec) -> ProviderInstance:
        """
        Create a server, adopting one an earlier attempt already made.

        A create that timed out may still have gone through, so before every
        retry (and after the last failure) the provider is searched by name.
        When the outcome stays unknown an orphan marker keyed by name is left
        for reconcile_orphans().
        """
        uncertain = []

        def attempt():
            if uncertain:
                found = self._find_by_name(provider, spec.name)
                if found is not None:
                    logger.warning(
                        f"Adopting {provider.name} server {found.instance_id} ({spec.name}) "
                        f"created by an earlier attempt"
                    )
                    return found
            try:
                return provider.create_instance(spec)
            except Exception as e:
                if is_transient(e) or isinstance(e, OSError):
                    uncertain.append(e)
                raise

        try:
            return self._provider_call(attempt, f"create {spec.name} on {provider.name}")
        except Exception as e:
            if not uncertain:
                raise
            try:
                found = self._find_by_name(provider, spec.name)
            except (ControlPlaneError, OSError) as lookup_err:
                logger.warning(f"Lookup of {spec.name} on {provider.name} failed: {lookup_err}")
                found = None
            if found is not None:
                logger.warning(f"Adopting {provider.name} server {found.instance_id} ({spec.name})")
                return found
            self.store.mark_orphan(
                ORPHAN_BY_NAME, spec.name, provider=provider.name,
                detail=f"create outcome unknown: {e}",
            )
            raise

    @staticmethod
    def _find_by_name(provider, name: str) -> Optional[ProviderInstance]:
        for inst in provider.list_instances():
            if inst.name == name:
                return inst
        return None

    def _await_network(self, record: InstanceRecord):
        provider = self.providers.get(record.provider)

        def probe():
            try:
                server = provider.get_instance(record.instance_id)
            except ProviderError as e:
                if e.retryable:
                    return None
                raise
            if server is None:
                raise ProviderError(
                    f"{provider.name}: instance {record.instance_id} disappeared",
                    ProviderError.PERMANENT, provider=provider.name,
                )
            return server if server.ready else None

        policy = Backoff(initial=self.poll_initial, max_delay=self.poll_max,
                         timeout=self.provision_timeout)
        try:
            server = poll_until(probe, policy, describe=f"{record.name} running",
                                sleep=self._sleep, clock=self._clock)
        except OperationTimeoutError as e:
            raise self._fail(record, S.BOOTSTRAP_TIMEOUT, "await_network", e, compensate=True) from e
        except Exception as e:
            raise self._fail(record, S.PROVISION_FAILED, "await_network", e, compensate=True) from e

        record.ipv4 = server.ipv4
        if server.hourly_rate:
            record.hourly_rate = server.hourly_rate
            record.monthly_rate = server.monthly_rate
        self._transition(record, S.NETWORK_READY, detail=server.ipv4)

    def _bootstrap(self, record: InstanceRecord):
        """Wait for cloud-init to finish k3s + Helm, then verify over SSH."""
        if record.status != S.BOOTSTRAPPING:
            self._transition(record, S.BOOTSTRAPPING)
        key = self.keys.get(record.ssh_key_fingerprint)

        def probe():
            try:
                conn = self.ssh.get_connection(record.ipv4, record.ssh_user, key.private_key)
                status = self.ops.bootstrap_status(conn)
            except SSHError:
                # sshd not up yet, or the box is still rebooting after package upgrades
                return None
            if status == BOOTSTRAP_FAILED:
                raise RemoteCommandError(f"Bootstrap script failed on {record.ipv4}")
            return conn if status == "READY" else None

        policy = Backoff(initial=self.poll_initial, max_delay=self.poll_max,
                         timeout=self.bootstrap_timeout)
        try:
            conn = poll_until(probe, policy, describe=f"{record.name} bootstrap",
                              sleep=self._sleep, clock=self._clock)
            report = self.ops.health_check(conn)
            if not report.k3s_active:
                raise RemoteCommandError(f"k3s is not active on {record.ipv4}", detail=str(report.services))
        except OperationTimeoutError as e:
            raise self._fail(record, S.BOOTSTRAP_TIMEOUT, "bootstrap", e, compensate=True) from e
        except (AuthenticationError, RemoteCommandError, SSHError) as e:
            raise self._fail(record, S.CONFIG_FAILED, "bootstrap", e, compensate=True) from e

        self._transition(record, S.SSH_READY)

    def _finish(self, record: InstanceRecord):
        """Optional domain step, then Running."""
        if record.domain and self.domain_configurer is not None:
            try:
                self.domain_configurer(record.domain, record.ipv4)
            except Exception as e:
                # Compute is healthy; keep it so the domain step can be retried.
                raise self._fail(record, S.CONFIG_FAILED, "configure_domain", e, compensate=False) from e
            self._transition(record, S.DOMAIN_CONFIGURED, detail=record.domain)
        record.last_error = None
        self._transition(record, S.RUNNING)

    def retry_instance(self, record_id: str) -> InstanceRecord:
        """Re-run the create workflow from where a failed record stopped."""
        with self._op_lock(record_id):
            record = self._require(record_id)
            if record.status not in FAILURE_STATES:
                raise ConflictError(f"Instance {record.name} is {record.state}, not in a failure state")
            if record.provider_released:
                raise ConflictError(
                    f"Instance {record.name} was released after failing; delete it and create a new one"
                )

            if not record.instance_id:
                spec = InstanceSpec(name=record.name, size=record.size, region=record.region,
                                    provider=record.provider, timezone=record.timezone,
                                    domain=record.domain)
                self._provision(record, spec, retry=True)
                self._await_network(record)
                self._bootstrap(record)
            elif record.status == S.CONFIG_FAILED and _reached(record, S.SSH_READY):
                self._transition(record, S.SSH_READY, detail="retry", retry=True)
            elif _reached(record, S.NETWORK_READY):
                self._transition(record, S.BOOTSTRAPPING, detail="retry", retry=True)
                self._bootstrap(record)
            else:
                self._transition(record, S.PROVISIONING, detail="retry", retry=True)
                self._await_network(record)
                self._bootstrap(record)
            self._finish(record)
            self._audit("retry", record.id, True, record.state)
            return record

    # ── Deletion ─────────────────────────────────────────────────

    def delete_instance(self, record_id: str):
        """
        Delete an instance. Deleting an unknown or already-deleted id is a
        no-op success. If the provider delete fails the record is kept in
        Deleting so the call can be retried.
        """
        if self.get_instance(record_id) is None:
            logger.info(f"Delete {record_id}: no such instance, nothing to do")
            return

        with self._op_lock(record_id):
            record = self.get_instance(record_id)
            if record is None:
                return
            if record.status != S.DELETING:
                self._transition(record, S.DELETING)
            if record.ipv4:
                self.ssh.invalidate_host(record.ipv4)

            if record.instance_id and not record.provider_released:
                provider = self.providers.get(record.provider)
                try:
                    self._provider_call(lambda: provider.delete_instance(record.instance_id),
                                        f"delete {record.instance_id}")
                except NotFoundError:
                    logger.info(f"{record.provider}:{record.instance_id} already gone")
                except Exception as e:
                    record.last_error = {**error_result(e), "step": "delete"}
                    self._save(record)
                    self._audit("delete", record.id, False, str(e))
                    raise

            self._transition(record, S.DELETED)
            self.store.delete(NS_INSTANCES, record.id)
            if record.instance_id:
                self.store.clear_orphan("instance", record.instance_id)
            self._audit("delete", record.id, True, record.name)
        self._drop_lock(record_id)

    # ── Power ────────────────────────────────────────────────────

    _POWER_RULES = {
        PowerAction.OFF: (S.RUNNING, None, S.POWERED_OFF),
        PowerAction.ON: (S.POWERED_OFF, None, S.RUNNING),
        PowerAction.REBOOT: (S.RUNNING, S.REBOOTING, S.RUNNING),
    }

    def power_action(self, record_id: str, action: PowerAction) -> InstanceRecord:
        if isinstance(action, str):
            try:
                action = PowerAction(action)
            except ValueError:
                raise ValidationError(f"Unknown power action {action!r}") from None
        required, intermediate, final = self._POWER_RULES[action]

        with self._op_lock(record_id):
            record = self._require(record_id)
            if record.status != required:
                raise ConflictError(
                    f"Cannot {action.value} instance {record.name} while it is {record.state}",
                )
            if intermediate is not None:
                self._transition(record, intermediate)

            provider = self.providers.get(record.provider)
            try:
                self._provider_call(lambda: provider.power_action(record.instance_id, action),
                                    f"power {action.value} {record.instance_id}")
            except Exception as e:
                if intermediate is not None:
                    self._transition(record, required, detail="power action failed")
                self._audit("power", record.id, False, f"{action.value}: {e}")
                raise

            if record.ipv4:
                self.ssh.invalidate_host(record.ipv4)
            self._transition(record, final)
            self._audit("power", record.id, True, action.value)
            return record

    # ── Cost & Reconciliation ────────────────────────────────────

    def accrued_cost(self, record_id: str, now: float = None) -> Dict[str, Any]:
        """Hours since creation × hourly rate."""
        record = self._require(record_id)
        now = now or time.time()
        hours = max(now - record.created_at, 0) / 3600.0
        return {
            "hours": round(hours, 2),
            "hourly_rate": record.hourly_rate,
            "monthly_rate": record.monthly_rate,
            "accrued": round(hours * record.hourly_rate, 4),
        }

    def reconcile_orphans(self) -> Dict[str, int]:
        """
        Retry deletion of resources left behind by failed compensations.

        Name-keyed markers come from creates whose outcome was unknown: a
        server with that name that no record owns is deleted, and the marker
        is dropped once the provider shows no such stray.
        """
        cleared = failed = 0
        for orphan in self.store.list_orphans():
            kind = orphan.get("kind")
            if kind not in ("instance", ORPHAN_BY_NAME):
                continue
            name = orphan.get("provider", "")
            if name not in self.providers:
                failed += 1
                continue
            provider = self.providers.get(name)
            try:
                if kind == ORPHAN_BY_NAME:
                    self._delete_unowned(provider, orphan["resource_id"])
                else:
                    provider.delete_instance(orphan["resource_id"])
            except (ControlPlaneError, OSError) as e:
                failed += 1
                logger.warning(f"Orphan {name}:{orphan['resource_id']} still not deleted: {e}")
                continue
            self.store.clear_orphan(kind, orphan["resource_id"])
            cleared += 1
        if cleared or failed:
            self._audit("reconcile", "orphans", failed == 0, f"cleared={cleared} failed={failed}")
        return {"cleared": cleared, "failed": failed}

    def _delete_unowned(self, provider, server_name: str):
        owned = {r.instance_id for r in self.list_instances()
                 if r.provider == provider.name and r.instance_id}
        for inst in provider.list_instances():
            if inst.name == server_name and inst.instance_id not in owned:
                provider.delete_instance(inst.instance_id)
                logger.info(f"Deleted stray {provider.name} server {inst.instance_id} ({server_name})")

    def get_stats(self) -> Dict[str, Any]:
        by_state: Dict[str, int] = {}
        for r in self.list_instances():
            by_state[r.state] = by_state.get(r.state, 0) + 1
        return {
            "instances": sum(by_state.values()),
            "by_state": by_state,
            "orphans": len(self.store.list_orphans()),
        }

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
