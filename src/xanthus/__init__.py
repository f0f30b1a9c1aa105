"""
Xanthus control plane — provisions k3s hosts, issues origin certificates
and bridges browser terminals to them.

Entry point: ``python -m xanthus --config config/xanthus.yml``;
the wiring lives in ``xanthus.context.ControlPlane``.
"""

__version__ = "0.1.0"
