"""
MongoRole Service

Process entrypoint for one database instance. Runs:
- The role lifecycle (on_start / run / on_stop) on the main thread
- The management API (HTTP FastAPI) on a background thread
- The fabric change poller, when talking to a host agent

Usage:
    python -m mongorole.service --fabric-url http://127.0.0.1:8100
    python -m mongorole.service --deployment-file deployment.local.yaml

Exit codes:
    0  mongod exited (or the service was stopped) and teardown ran
    1  startup failed; the host should recycle the instance
"""

import argparse
import logging
import signal
import threading
from typing import List, Optional

import uvicorn

from fabric.client import FabricClient
from fabric.emulator import EmulatedEnvironment
from fabric.environment import RoleEnvironment, RoleEnvironmentError
from mongorole import mgmt_app
from mongorole.config import DEPLOYMENT_FILE, FABRIC_URL, MGMT_BIND_HOST, MGMT_PORT, ROLE_ROOT
from mongorole.errors import ProcessLaunchError, VolumeMountError
from mongorole.role import MongoDBRole
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)


def build_environment(fabric_url: Optional[str], deployment_file: Optional[str]) -> RoleEnvironment:
    if fabric_url:
        return FabricClient(agent_url=fabric_url)
    if deployment_file:
        return EmulatedEnvironment.from_file(deployment_file)
    raise RoleEnvironmentError("Either a fabric URL or a deployment file is required")


class MongoRoleService:
    """
    Main service orchestrator.
    Manages the role lifecycle plus the management listener.
    """

    def __init__(
        self,
        environment: RoleEnvironment,
        role: MongoDBRole,
        mgmt_host: str = "0.0.0.0",
        mgmt_port: int = 9300,
        enable_mgmt: bool = True,
    ):
        self.environment = environment
        self.role = role
        self.mgmt_host = mgmt_host
        self.mgmt_port = mgmt_port
        self.enable_mgmt = enable_mgmt

        self.mgmt_thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

        logger.info(f"MongoRole service initialized: instance={environment.current_instance_id}")
        if enable_mgmt:
            logger.info(f"  Management API: http://{mgmt_host}:{mgmt_port}")

    def start(self) -> bool:
        """
        Start the management listener and the role.
        Fatal startup errors propagate to the caller.
        """
        logger.info("Starting MongoRole service...")

        if self.enable_mgmt:
            mgmt_app.set_role(self.role)
            self.mgmt_thread = threading.Thread(target=self._run_mgmt_server, daemon=True)
            self.mgmt_thread.start()

        if isinstance(self.environment, FabricClient):
            self.environment.start_polling()

        started = self.role.on_start()
        if started:
            logger.info("✓ MongoRole service started successfully")
        return started

    def run(self) -> None:
        self.role.run()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        logger.info("Stopping MongoRole service...")
        results = self.role.on_stop()
        failed = [r.name for r in results if not r.ok]
        if failed:
            logger.warning(f"Teardown steps not completed: {failed}")
        self.environment.close()
        logger.info("✓ MongoRole service stopped")

    def _run_mgmt_server(self):
        """Run management FastAPI server in thread"""
        try:
            uvicorn.run(
                mgmt_app.create_mgmt_app(),
                host=self.mgmt_host,
                port=self.mgmt_port,
                log_level="info",
                access_log=False
            )
        except Exception as e:
            logger.error(f"Management server error: {e}", exc_info=True)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MongoRole node supervisor")

    parser.add_argument(
        "--fabric-url",
        type=str,
        default=FABRIC_URL or None,
        help="Host agent base URL (default: $MONGOROLE_FABRIC_URL)"
    )
    parser.add_argument(
        "--deployment-file",
        type=str,
        default=DEPLOYMENT_FILE or None,
        help="YAML deployment for the emulated environment (default: $MONGOROLE_DEPLOYMENT_FILE)"
    )
    parser.add_argument(
        "--role-root",
        type=str,
        default=ROLE_ROOT,
        help="Directory containing the mongod binary folder (default: $MONGOROLE_ROLE_ROOT or cwd)"
    )
    parser.add_argument(
        "--mgmt-host",
        type=str,
        default=MGMT_BIND_HOST,
        help=f"Management bind host (default: {MGMT_BIND_HOST})"
    )
    parser.add_argument(
        "--mgmt-port",
        type=int,
        default=MGMT_PORT,
        help=f"Management port (default: {MGMT_PORT})"
    )
    parser.add_argument(
        "--no-mgmt",
        action="store_true",
        help="Do not start the management API"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help="Supervisor log level (default: INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Optional supervisor log file"
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    setup_logging("mongorole", level=args.log_level, log_file=args.log_file)

    try:
        environment = build_environment(args.fabric_url, args.deployment_file)
    except RoleEnvironmentError as e:
        logger.error(f"Cannot build role environment: {e}")
        return 1

    service = MongoRoleService(
        environment=environment,
        role=MongoDBRole(environment, role_root=args.role_root),
        mgmt_host=args.mgmt_host,
        mgmt_port=args.mgmt_port,
        enable_mgmt=not args.no_mgmt,
    )

    # Signal handlers for graceful shutdown
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        service.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        started = service.start()
    except (VolumeMountError, ProcessLaunchError) as e:
        logger.critical(f"Fatal startup failure, instance must recycle: {e}")
        service.stop()
        return 1

    if not started:
        service.stop()
        return 1

    service.run()
    service.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
