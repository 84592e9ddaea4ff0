"""
Subprocess utility functions for the P2P Interop Harness.

This module provides shared utilities for participant process execution:
environment preparation, argument templating and process-tree termination.
"""

import os
import signal
import subprocess
import time
from typing import Dict, List, Optional, Mapping
import logging

import psutil

from .constants import (
    ENV_ROLE, ENV_TRANSPORT, ENV_SECURITY, ENV_MUXER, ENV_CASE_ID,
    ENV_REDIS_URL, ENV_LISTENER_KEY, ENV_DIALER_KEY, ENV_PROBE, ENV_TIMEOUT, ENV_IP,
)

logger = logging.getLogger(__name__)


def prepare_subprocess_environment(
    clean_env: bool = True,
    extra: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Prepare environment for subprocess execution.

    Args:
        clean_env: If True, use minimal environment with only essential variables.
                   If False, copy the current environment.
        extra: Additional variables layered on top (participant parameters,
               per-environment overrides)

    Returns:
        Environment dictionary for subprocess
    """
    if not clean_env:
        env = os.environ.copy()
    else:
        # Whitelist essential environment variables
        env = {}
        env["PATH"] = os.environ.get("PATH", "/usr/bin:/bin")
        env["HOME"] = os.environ.get("HOME", "/tmp")
        for var in ["LANG", "LC_ALL", "LC_CTYPE", "PYTHONPATH", "RUST_LOG", "DEBUG"]:
            if var in os.environ:
                env[var] = os.environ[var]

    if extra:
        env.update({k: str(v) for k, v in extra.items()})

    return env


def participant_variables(
    role: str,
    transport: str,
    security: str,
    muxer: str,
    case_id: str,
    redis_url: str,
    listener_key: str,
    dialer_key: str,
    probe_hex: str,
    timeout_seconds: int,
    ip: str = "0.0.0.0"
) -> Dict[str, str]:
    """
    Build the variables a native participant reads its parameters from.

    Both the INTEROP_* names and the lowercase names used by existing
    interop-test binaries are exported, so either kind of participant can
    run unmodified.
    """
    redis_addr = redis_url.split("://", 1)[-1].split("/", 1)[0]
    return {
        ENV_ROLE: role,
        ENV_TRANSPORT: transport,
        ENV_SECURITY: security,
        ENV_MUXER: muxer,
        ENV_CASE_ID: case_id,
        ENV_REDIS_URL: redis_url,
        ENV_LISTENER_KEY: listener_key,
        ENV_DIALER_KEY: dialer_key,
        ENV_PROBE: probe_hex,
        ENV_TIMEOUT: str(timeout_seconds),
        ENV_IP: ip,
        # Legacy interop-tests names
        "transport": transport,
        "security": security,
        "muxer": muxer,
        "is_dialer": "true" if role == "dialer" else "false",
        "ip": ip,
        "redis_addr": redis_addr,
        "test_timeout_seconds": str(timeout_seconds),
    }


def render_command(command: List[str], **params: str) -> List[str]:
    """
    Substitute ``{role}``-style placeholders in a configured command.

    Args:
        command: Command template from the environment configuration
        **params: Values for the placeholders

    Returns:
        Concrete argument vector

    Raises:
        KeyError: If the template references an unknown placeholder
    """
    return [part.format(**params) for part in command]


def _group_members(pgid: int) -> List[psutil.Process]:
    """Live processes in a process group."""
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid and proc.status() != psutil.STATUS_ZOMBIE:
                members.append(proc)
        except (ProcessLookupError, psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return members


def _signal_group(pgid: int, sig: int) -> None:
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        pass


def terminate_process_tree(process: subprocess.Popen, grace: float) -> Optional[int]:
    """
    Stop a process and everything it started.

    Participants run in their own session, so the process group is signalled
    as a whole. Children that outlive the root (a wrapper that backgrounds
    the real peer and exits) are stopped too. Descendants that moved to
    another group are reached through the psutil tree while the root lives.
    Sends SIGTERM first and escalates to SIGKILL for anything still alive
    after ``grace`` seconds. Safe to call on an already-exited process.

    Args:
        process: Process started by the harness with ``start_new_session=True``
        grace: Seconds to wait between terminate and kill

    Returns:
        Exit code of the root process, if known
    """
    pgid = process.pid
    # Reap the root first so it does not linger as a zombie group member
    process.poll()

    procs = {proc.pid: proc for proc in _group_members(pgid)}
    if process.returncode is None:
        try:
            root = psutil.Process(process.pid)
            for proc in root.children(recursive=True) + [root]:
                procs.setdefault(proc.pid, proc)
        except psutil.NoSuchProcess:
            pass
    if not procs:
        return process.poll()

    _signal_group(pgid, signal.SIGTERM)
    for proc in procs.values():
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    # The root is reaped through Popen so its exit code is kept
    others = [proc for pid, proc in procs.items() if pid != process.pid]
    started = time.monotonic()
    try:
        process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        pass
    remaining = max(0.0, grace - (time.monotonic() - started))
    _, alive = psutil.wait_procs(others, timeout=remaining)

    stragglers = [proc.pid for proc in alive]
    if process.returncode is None:
        stragglers.insert(0, process.pid)
    if stragglers:
        logger.warning(f"Processes {stragglers} ignored SIGTERM for {grace}s, killing")
        _signal_group(pgid, signal.SIGKILL)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        if process.returncode is None:
            process.kill()
        psutil.wait_procs(alive, timeout=grace)

    try:
        return process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        return None
