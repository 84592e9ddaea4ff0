"""
Unit tests for participant process termination.
"""

import signal
import subprocess
import sys
import textwrap
import time

import psutil
import pytest

from interop_harness.utils.subprocess_utils import terminate_process_tree, render_command


def gone(pid: int) -> bool:
    """A process is gone once it no longer exists or only lingers as a zombie."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def spawn(argv):
    return subprocess.Popen(
        argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, start_new_session=True,
    )


@pytest.mark.slow
class TestTerminateProcessTree:
    """SIGTERM, then SIGKILL, for everything a participant started."""

    def test_terminates_running_process(self):
        process = spawn([sys.executable, "-c", "import time; time.sleep(30)"])
        assert terminate_process_tree(process, grace=2) == -signal.SIGTERM
        process.stdout.close()

    def test_children_outliving_the_wrapper_are_stopped(self):
        process = spawn(["sh", "-c", "sleep 60 & echo $!; exit 0"])
        child = int(process.stdout.readline())
        process.wait(timeout=5)
        assert not gone(child)

        assert terminate_process_tree(process, grace=1) == 0
        deadline = time.monotonic() + 5
        while not gone(child) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert gone(child)
        process.stdout.close()

    def test_children_of_a_running_process_are_stopped(self):
        process = spawn(["sh", "-c", "sleep 60 & echo $!; wait"])
        child = int(process.stdout.readline())

        terminate_process_tree(process, grace=1)
        deadline = time.monotonic() + 5
        while not gone(child) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert gone(child)
        assert process.poll() is not None
        process.stdout.close()

    def test_sigterm_ignored_escalates_to_kill(self):
        script = textwrap.dedent("""
            import signal, sys, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("armed", flush=True)
            time.sleep(30)
        """)
        process = spawn([sys.executable, "-c", script])
        assert process.stdout.readline().strip() == b"armed"

        started = time.monotonic()
        assert terminate_process_tree(process, grace=0.5) == -signal.SIGKILL
        assert time.monotonic() - started < 3
        process.stdout.close()

    def test_already_exited(self):
        process = spawn([sys.executable, "-c", "raise SystemExit(3)"])
        process.wait(timeout=10)
        assert terminate_process_tree(process, grace=0.5) == 3
        process.stdout.close()


def test_render_command():
    assert render_command(["peer", "--role={role}", "{case_id}"], role="dialer", case_id="a:b") == [
        "peer", "--role=dialer", "a:b",
    ]
