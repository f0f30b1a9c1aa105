"""
Xanthus VPS Layer — compute lifecycle for k3s hosts

Provides:
- Provider abstraction (ComputeProvider) with Hetzner and Hostinger adapters
- Lifecycle Manager (LifecycleManager) — instance state machine
- SSH Connection Cache (SSHConnectionCache) — pooled remote execution
- SSH operations (ssh_ops) — health, manifests, Helm, logs, TLS push
- State Store (StateStore) — SQLite key-value store and event ledger
"""

from .providers import (
    ComputeProvider, InstanceSpec, PowerAction, ProviderInstance,
    ProviderRegistry, SSHKeyRef,
)
from .hetzner import HetznerProvider
from .hostinger import HostingerProvider
from .lifecycle import InstanceRecord, InstanceState, LifecycleManager
from .keys import SSHKeyMaterial, SSHKeyStore
from .ssh_bridge import ExecResult, SSHConnection, SSHConnectionCache
from .state import StateStore

__all__ = [
    'ComputeProvider', 'InstanceSpec', 'PowerAction', 'ProviderInstance',
    'ProviderRegistry', 'SSHKeyRef',
    'HetznerProvider', 'HostingerProvider',
    'InstanceRecord', 'InstanceState', 'LifecycleManager',
    'SSHKeyMaterial', 'SSHKeyStore',
    'ExecResult', 'SSHConnection', 'SSHConnectionCache',
    'StateStore',
]
