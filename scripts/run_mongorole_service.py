"""
MongoRole Service Launcher Script

Simplified launcher for a local, emulated instance with sensible defaults.
Each simulated instance is started with its own ordinal; ports are offset by
ordinal so several instances can share this host.

Usage:
    python scripts/run_mongorole_service.py --ordinal 0
    python scripts/run_mongorole_service.py --ordinal 1 --deployment-file deployment/deployment.local.yaml

Environment variables:
    MONGOROLE_ROLE_ROOT: Directory containing MongoDBBinaries/bin/mongod
"""

import argparse
import os
import sys

# Add project root to Python path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from fabric.emulator import EmulatedEnvironment, load_deployment_file
from mongorole.config import MGMT_PORT, ROLE_ROOT
from mongorole.role import MongoDBRole
from mongorole.service import MongoRoleService
from mongorole.errors import ProcessLaunchError, VolumeMountError
from shared.logging_config import setup_logging


def main():
    parser = argparse.ArgumentParser(description="Launch an emulated MongoRole instance")

    parser.add_argument(
        "--ordinal",
        type=int,
        required=True,
        help="Ordinal of the simulated instance (0 is the replica set coordinator)"
    )
    parser.add_argument(
        "--deployment-file",
        type=str,
        default=os.path.join(project_root, "deployment", "deployment.local.yaml"),
        help="Deployment description (default: deployment/deployment.local.yaml)"
    )
    parser.add_argument(
        "--role-root",
        type=str,
        default=ROLE_ROOT,
        help="Directory containing the mongod binary folder"
    )
    parser.add_argument(
        "--mgmt-port",
        type=int,
        default=None,
        help=f"Management port (default: {MGMT_PORT} + ordinal)"
    )

    args = parser.parse_args()
    logger = setup_logging(f"mongorole-{args.ordinal}")

    deployment = load_deployment_file(args.deployment_file)
    deployment["instance_ordinal"] = args.ordinal
    environment = EmulatedEnvironment(deployment)

    service = MongoRoleService(
        environment=environment,
        role=MongoDBRole(environment, role_root=args.role_root),
        mgmt_host="127.0.0.1",
        mgmt_port=args.mgmt_port or MGMT_PORT + args.ordinal,
    )

    # 1. Start: attach volume, launch mongod, coordinate the replica set
    logger.info("Step 1: Starting role...")
    try:
        if not service.start():
            service.stop()
            sys.exit(1)
    except (VolumeMountError, ProcessLaunchError) as e:
        logger.error(f"Startup failed: {e}")
        service.stop()
        sys.exit(1)

    # 2. Supervise until mongod exits or Ctrl+C
    logger.info("Step 2: Supervising mongod...")
    try:
        service.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt, shutting down...")
    finally:
        service.stop()


if __name__ == "__main__":
    main()
