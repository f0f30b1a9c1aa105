#!/usr/bin/env python3
"""
Run the control plane: ``python -m xanthus --config config/xanthus.yml``.

Loads configuration, starts the background sweepers and serves the
terminal WebSocket endpoint until interrupted.
"""

import argparse
import logging
import sys
import threading

from .config import load_config
from .context import ControlPlane
from .errors import ValidationError

logger = logging.getLogger("xanthus")


def main(argv=None):
    """Start the control plane."""
    parser = argparse.ArgumentParser(prog="xanthus", description="Xanthus control plane")
    parser.add_argument("--config", default="config/xanthus.yml", help="YAML configuration file")
    parser.add_argument("--env-only", action="store_true", help="ignore --config, read env vars only")
    args = parser.parse_args(argv)

    try:
        config = load_config(None if args.env_only else args.config)
    except (FileNotFoundError, ValidationError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logging.basicConfig(
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        level=getattr(logging, config.log_level, logging.INFO),
    )

    plane = ControlPlane(config)
    plane.start(serve_terminal=True)
    logger.info(f"Control plane running. Terminal endpoint on port {config.terminal.port}")

    reconciled = plane.reconcile()
    if reconciled["cleared"] or reconciled["failed"]:
        logger.info(f"Orphan reconciliation: {reconciled}")

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        plane.shutdown()


if __name__ == "__main__":
    main()
