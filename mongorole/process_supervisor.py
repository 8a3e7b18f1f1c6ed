"""
Mongod Process Supervisor

Launches the mongod binary with the computed command line, reports
liveness, and delivers the step-down and shutdown commands while the
process is still running.

Launch failures are fatal (ProcessLaunchError). Step-down, shutdown and
terminate are best-effort: failures are logged and reported as False.
"""

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from mongorole.config import MONGOD_COMMAND_LINE_CLOUD, MONGOD_COMMAND_LINE_EMULATED
from mongorole.database import RoleRecorder
from mongorole.errors import ProcessLaunchError
from mongorole.models import RoleEventType
from mongorole.mongod_client import MongodClient

logger = logging.getLogger(__name__)


def build_command_line(
    emulated: bool,
    port: int,
    data_dir: str,
    log_file: str,
    replica_set_name: str,
    log_verbosity: Optional[str],
) -> List[str]:
    """Fill the emulated or cloud template and split it into argv."""
    template = MONGOD_COMMAND_LINE_EMULATED if emulated else MONGOD_COMMAND_LINE_CLOUD
    rendered = template.format(
        port,
        shlex.quote(data_dir),
        shlex.quote(log_file),
        shlex.quote(replica_set_name),
        log_verbosity or "",
    )
    return shlex.split(rendered)


@dataclass
class ManagedProcess:
    handle: subprocess.Popen
    binary_path: str
    args: List[str]
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def exited(self) -> bool:
        return self.handle.poll() is not None

    @property
    def returncode(self) -> Optional[int]:
        return self.handle.poll()


class ProcessSupervisor:
    """
    Owns the single mongod child process of this instance.
    """

    def __init__(self, client: MongodClient, recorder: Optional[RoleRecorder] = None):
        self.client = client
        self.recorder = recorder
        self.process: Optional[ManagedProcess] = None

    def launch(self, binary_path: str, working_dir: str, args: List[str]) -> ManagedProcess:
        logger.info(f"Launching mongod as {binary_path} {' '.join(args)}")
        try:
            handle = subprocess.Popen(
                [binary_path] + list(args),
                cwd=working_dir,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            logger.error(f"Can't start mongod: {e}")
            raise ProcessLaunchError(f"Can't start mongod: {e}") from e

        self.process = ManagedProcess(handle=handle, binary_path=binary_path, args=list(args))
        logger.info(f"Mongod process started: pid={handle.pid}")
        if self.recorder:
            self.recorder.log_event(RoleEventType.PROCESS_LAUNCH, f"Started {binary_path} pid={handle.pid}")
        return self.process

    def is_alive(self, process: Optional[ManagedProcess] = None) -> bool:
        process = process or self.process
        return process is not None and not process.exited

    def wait_until_listening(
        self,
        poll_interval: float = 1.0,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until mongod answers ping. Returns False if `cancel` is set
        first.

        Raises ProcessLaunchError if the process exits first, or if
        `timeout` seconds pass without an answer.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        attempts = 0
        while True:
            if not self.is_alive():
                code = self.process.returncode if self.process else None
                raise ProcessLaunchError(f"mongod exited with code {code} before accepting connections")
            if self.client.ping():
                logger.info(f"Mongod is listening on {self.client.address} after {attempts} retries")
                return True
            attempts += 1
            if deadline is not None and time.monotonic() >= deadline:
                raise ProcessLaunchError(f"mongod not listening on {self.client.address} after {timeout}s")
            if attempts % 10 == 0:
                logger.info(f"Waiting for mongod on {self.client.address} ({attempts} attempts)")
            if cancel is None:
                time.sleep(poll_interval)
            elif cancel.wait(poll_interval):
                logger.info(f"Stopped waiting for mongod on {self.client.address}")
                return False

    # ------------------------------------------------------------------
    # Best-effort commands
    # ------------------------------------------------------------------

    def _send_if_alive(self, name: str, command: Callable[[], Any]) -> bool:
        if not self.is_alive():
            logger.info(f"Mongod not running, skipping {name}")
            return False
        try:
            logger.info(f"{name.capitalize()} called on mongod")
            command()
            return True
        except Exception as e:
            logger.warning(f"Mongod {name} failed with {e}", exc_info=True)
            return False

    def request_step_down(self, step_down: Optional[Callable[[], Any]] = None) -> bool:
        return self._send_if_alive("step-down", step_down or self.client.step_down)

    def request_shutdown(self) -> bool:
        return self._send_if_alive("shutdown", self.client.shutdown)

    def terminate(self, timeout: float = 30.0) -> bool:
        """Reap the child; SIGTERM, then SIGKILL, if it outlives `timeout`."""
        process = self.process
        if process is None:
            return True
        try:
            try:
                process.handle.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Mongod pid={process.pid} still running after {timeout}s, terminating")
                process.handle.terminate()
                try:
                    process.handle.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Mongod pid={process.pid} ignored SIGTERM, killing")
                    process.handle.kill()
                    process.handle.wait(timeout=timeout)
            logger.info(f"Mongod pid={process.pid} exited with code {process.returncode}")
            if self.recorder:
                self.recorder.log_event(RoleEventType.PROCESS_EXIT, f"pid={process.pid} exited with code {process.returncode}")
            return True
        except Exception as e:
            logger.warning(f"Failed to reap mongod pid={process.pid}: {e}", exc_info=True)
            return False
