import sys
import threading

import pytest

from mongorole.errors import ProcessLaunchError
from mongorole.process_supervisor import ProcessSupervisor, build_command_line
from tests.conftest import FakeMongodClient

SLEEPER = ["-c", "import time; time.sleep(30)"]
QUICK_EXIT = ["-c", "import sys; sys.exit(3)"]


@pytest.fixture
def supervisor():
    sup = ProcessSupervisor(FakeMongodClient())
    yield sup
    if sup.is_alive():
        sup.process.handle.kill()
        sup.process.handle.wait()


def test_emulated_command_line():
    args = build_command_line(True, 27018, "/data/db", "/logs/mongod.log", "rs", "-vv")
    assert args == [
        "--port", "27018", "--dbpath", "/data/db", "--logpath", "/logs/mongod.log",
        "--replSet", "rs", "-vv", "--logappend", "--bind_ip", "127.0.0.1",
    ]


def test_cloud_command_line_without_verbosity():
    args = build_command_line(False, 27017, "/data/db", "/logs/mongod.log", "rs", None)
    assert args == [
        "--port", "27017", "--dbpath", "/data/db", "--logpath", "/logs/mongod.log",
        "--replSet", "rs", "--logappend", "--bind_ip_all", "--quiet",
    ]


def test_command_line_keeps_paths_with_spaces_whole():
    args = build_command_line(True, 27017, "/mnt/my data", "/var/log/mongo d.log", "rs", "-v")
    assert args[args.index("--dbpath") + 1] == "/mnt/my data"
    assert args[args.index("--logpath") + 1] == "/var/log/mongo d.log"


def test_launch_and_liveness(supervisor, tmp_path):
    process = supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    assert process.pid > 0
    assert supervisor.is_alive()

    process.handle.kill()
    process.handle.wait()
    assert not supervisor.is_alive()


def test_launch_failure_is_fatal(supervisor, tmp_path):
    with pytest.raises(ProcessLaunchError):
        supervisor.launch(str(tmp_path / "no-such-mongod"), str(tmp_path), [])
    assert supervisor.process is None
    assert not supervisor.is_alive()


def test_wait_until_listening_returns_once_ping_answers(supervisor, tmp_path):
    supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    supervisor.wait_until_listening(poll_interval=0.01)


def test_wait_until_listening_fails_if_process_exits(supervisor, tmp_path):
    supervisor.client.listening = False
    process = supervisor.launch(sys.executable, str(tmp_path), QUICK_EXIT)
    process.handle.wait()
    with pytest.raises(ProcessLaunchError):
        supervisor.wait_until_listening(poll_interval=0.01)


def test_wait_until_listening_times_out(supervisor, tmp_path):
    supervisor.client.listening = False
    supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    with pytest.raises(ProcessLaunchError):
        supervisor.wait_until_listening(poll_interval=0.01, timeout=0.05)


def test_wait_until_listening_can_be_cancelled(supervisor, tmp_path):
    supervisor.client.listening = False
    supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()
    assert supervisor.wait_until_listening(poll_interval=0.01, cancel=cancel) is False
    assert supervisor.is_alive()


def test_commands_are_skipped_when_process_is_gone(supervisor, tmp_path):
    process = supervisor.launch(sys.executable, str(tmp_path), QUICK_EXIT)
    process.handle.wait()

    assert supervisor.request_step_down() is False
    assert supervisor.request_shutdown() is False
    assert supervisor.client.calls == []


def test_commands_are_sent_while_alive(supervisor, tmp_path):
    supervisor.launch(sys.executable, str(tmp_path), SLEEPER)

    assert supervisor.request_step_down(lambda: supervisor.client.step_down(60)) is True
    assert supervisor.request_shutdown() is True
    assert [call[0] for call in supervisor.client.calls] == ["replSetStepDown", "shutdown"]


def test_failed_command_is_reported_not_raised(supervisor, tmp_path):
    supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    supervisor.client.fail.add("shutdown")
    assert supervisor.request_shutdown() is False


def test_terminate_escalates_after_timeout(supervisor, tmp_path):
    process = supervisor.launch(sys.executable, str(tmp_path), SLEEPER)
    assert supervisor.terminate(timeout=0.1) is True
    assert process.exited


def test_terminate_without_process():
    assert ProcessSupervisor(FakeMongodClient()).terminate() is True
