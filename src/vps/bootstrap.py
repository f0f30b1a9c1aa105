"""
Cloud-init user data that bootstraps k3s + Helm on a fresh instance.

The setup script reports progress through /opt/xanthus/status, which the
lifecycle manager polls over SSH (see ssh_ops.bootstrap_status).
"""

from xanthus.errors import ValidationError

STATUS_FILE = "/opt/xanthus/status"
SETUP_LOG = "/opt/xanthus/setup.log"
KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"

# Ordered progress markers written by the setup script.
BOOTSTRAP_STAGES = [
    "INSTALLING",
    "INSTALLING_K3S",
    "WAITING_K3S",
    "INSTALLING_HELM",
    "VERIFYING",
    "READY",
]
BOOTSTRAP_FAILED = "FAILED"

_USER_DATA_TEMPLATE = """#cloud-config
package_update: true
package_upgrade: true

packages:
  - curl
  - wget
  - git
  - apt-transport-https
  - ca-certificates
  - gnupg
  - jq

write_files:
  - path: /etc/environment
    content: |
      KUBECONFIG=__KUBECONFIG__
    append: true
  - path: /opt/xanthus/setup.sh
    permissions: '0755'
    content: |
      #!/bin/bash
      set -euo pipefail

      LOG_FILE="__SETUP_LOG__"
      STATUS_FILE="__STATUS_FILE__"
      TIMEZONE="__TIMEZONE__"

      log() {
          echo "[$(date '+%Y-%m-%d %H:%M:%S')] $1" | tee -a "$LOG_FILE"
      }

      update_status() {
          echo "$1" > "$STATUS_FILE"
          log "Status: $1"
      }

      trap 'update_status FAILED' ERR

      mkdir -p /opt/xanthus/ssl
      update_status "INSTALLING"

      if [ -n "$TIMEZONE" ]; then
          timedatectl set-timezone "$TIMEZONE"
      fi

      systemctl enable ssh
      systemctl start ssh

      update_status "INSTALLING_K3S"
      curl -sfL https://get.k3s.io | sh -s - --write-kubeconfig-mode 644
      systemctl enable k3s

      update_status "WAITING_K3S"
      timeout 300 bash -c 'until systemctl is-active k3s >/dev/null 2>&1 && kubectl get nodes --no-headers 2>/dev/null | grep -q " Ready"; do sleep 5; done'

      echo 'export KUBECONFIG=__KUBECONFIG__' >> /root/.bashrc
      echo 'alias k=kubectl' >> /root/.bashrc

      update_status "INSTALLING_HELM"
      curl -fsSL https://raw.githubusercontent.com/helm/helm/main/scripts/get-helm-3 | bash
      helm version --short >> "$LOG_FILE"

      update_status "VERIFYING"
      timeout 30 kubectl get nodes >> "$LOG_FILE" 2>&1 || log "WARNING: kubectl get nodes failed"
      timeout 30 kubectl get pods -A >> "$LOG_FILE" 2>&1 || log "WARNING: kubectl get pods failed"

      update_status "READY"

runcmd:
  - mkdir -p /opt/xanthus
  - /opt/xanthus/setup.sh
"""


def render_user_data(timezone: str = "") -> str:
    """Cloud-init document for a new k3s instance."""
    if any(c in timezone for c in "\"'`$\\\n"):
        raise ValidationError(f"Invalid timezone: {timezone!r}")
    return (
        _USER_DATA_TEMPLATE
        .replace("__KUBECONFIG__", KUBECONFIG)
        .replace("__SETUP_LOG__", SETUP_LOG)
        .replace("__STATUS_FILE__", STATUS_FILE)
        .replace("__TIMEZONE__", timezone)
    )


def stage_index(status: str) -> int:
    """Position of a status marker in BOOTSTRAP_STAGES, -1 if unknown."""
    try:
        return BOOTSTRAP_STAGES.index(status)
    except ValueError:
        return -1
