#!/usr/bin/env python3
"""
Spread Controller - Entry Point

A CRD-based Kubernetes controller that watches SpreadPolicy objects
and keeps the selected pods spread across failure domains.

Usage:
    python run.py [--namespace NAMESPACE] [--dry-run] [--in-cluster]
"""

import argparse
import logging
import signal
import sys

from kubernetes import config

from spread_controller.config import (
    DEFAULT_WORKERS,
    LEASE_NAME,
    LEASE_NAMESPACE,
    RESYNC_PERIOD_SECONDS,
)
from spread_controller.controller import SpreadController

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Spread Controller - Keep pods spread across failure domains per SpreadPolicy"
    )
    parser.add_argument(
        "--namespace", "-n",
        default="",
        help="Namespace to watch (default: all namespaces)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run in dry-run mode (no changes made)"
    )
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use in-cluster config (for running inside Kubernetes)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Number of reconciliation workers (default: {DEFAULT_WORKERS})"
    )
    parser.add_argument(
        "--resync-period",
        type=int,
        default=RESYNC_PERIOD_SECONDS,
        help=f"Seconds between full resyncs of every policy (default: {RESYNC_PERIOD_SECONDS})"
    )
    parser.add_argument(
        "--lease-name",
        default=LEASE_NAME,
        help=f"Name of the leader election Lease (default: {LEASE_NAME})"
    )
    parser.add_argument(
        "--lease-namespace",
        default=LEASE_NAMESPACE,
        help=f"Namespace of the leader election Lease (default: {LEASE_NAMESPACE})"
    )
    parser.add_argument(
        "--identity",
        default=None,
        help="Leader election identity (default: hostname plus random suffix)"
    )
    parser.add_argument(
        "--no-leader-election",
        action="store_true",
        help="Act as leader without acquiring a Lease (single replica only)"
    )
    parser.add_argument(
        "--ready-file",
        default=None,
        help="File to create once the cache has synced, for readiness probes"
    )
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()

    # Set log level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.workers < 1:
        logger.error("--workers must be at least 1")
        sys.exit(2)

    # Load Kubernetes configuration
    try:
        if args.in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster configuration")
        else:
            config.load_kube_config()
            logger.info("Loaded kubeconfig from default location")
    except Exception as e:
        logger.error(f"Failed to load Kubernetes config: {e}")
        sys.exit(1)

    # Create and run controller
    controller = SpreadController(
        namespace=args.namespace,
        dry_run=args.dry_run,
        workers=args.workers,
        resync_period=args.resync_period,
        leader_election=not args.no_leader_election,
        lease_name=args.lease_name,
        lease_namespace=args.lease_namespace,
        identity=args.identity,
        ready_file=args.ready_file,
    )

    signal.signal(signal.SIGTERM, lambda signum, frame: controller.stop())

    try:
        exit_code = controller.run()
    except KeyboardInterrupt:
        controller.stop()
        logger.info("Controller stopped")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Controller error: {e}")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
