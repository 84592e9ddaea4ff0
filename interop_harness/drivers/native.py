"""
Native environment driver.

Runs a participant as a local process. Parameters go in through the
environment, structured events come back as JSON lines on stdout, and the
process tree is torn down with psutil.
"""

import os
import queue
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import logging

from .base import (
    EnvironmentDriver, ParticipantContext, ParticipantEvent, ParticipantHandle,
    parse_event_line,
)
from ..config import EnvironmentConfig, SettingsConfig
from ..exceptions import InfrastructureError
from ..matrix import MatrixCase
from ..rendezvous import RendezvousRecord
from ..utils.constants import Role, EventType
from ..utils.subprocess_utils import (
    prepare_subprocess_environment, participant_variables, render_command,
    terminate_process_tree,
)

logger = logging.getLogger(__name__)

_PROJECT_ROOT = str(Path(__file__).parent.parent.parent.absolute())


@dataclass
class _NativeProcess:
    popen: subprocess.Popen
    events: "queue.Queue[ParticipantEvent]"
    reader: threading.Thread
    exit_event: Optional[ParticipantEvent] = None


class NativeDriver(EnvironmentDriver):
    """Driver for participants that run as local processes."""

    def __init__(self, environment: EnvironmentConfig, settings: SettingsConfig, clean_env: bool = True):
        """
        Initialize native driver.

        Args:
            environment: Environment entry with the command template
            settings: Runtime settings (grace period, poll interval)
            clean_env: Start participants from a whitelisted environment
        """
        super().__init__(environment, settings)
        self.clean_env = clean_env

    def _build_environment(self, role: Role, case: MatrixCase, context: ParticipantContext) -> dict:
        variables = participant_variables(
            role=role.value,
            transport=case.transport.value,
            security=case.security.value,
            muxer=case.muxer.value,
            case_id=case.case_id,
            redis_url=context.redis_url,
            listener_key=context.listener_key,
            dialer_key=context.dialer_key,
            probe_hex=context.probe.hex(),
            timeout_seconds=int(context.timeout),
        )
        variables.update(self.environment.env)
        env = prepare_subprocess_environment(self.clean_env, extra=variables)
        # Project root on PYTHONPATH so bundled participants can import the harness
        if env.get("PYTHONPATH"):
            env["PYTHONPATH"] = f"{_PROJECT_ROOT}{os.pathsep}{env['PYTHONPATH']}"
        else:
            env["PYTHONPATH"] = _PROJECT_ROOT
        return env

    def start(self, role: Role, case: MatrixCase, context: ParticipantContext) -> ParticipantHandle:
        handle = ParticipantHandle(environment=self.name, role=role, case=case, context=context)
        try:
            cmd = render_command(
                self.environment.command,
                role=role.value,
                transport=case.transport.value,
                security=case.security.value,
                muxer=case.muxer.value,
                case_id=case.case_id,
                python=sys.executable,
            )
        except (KeyError, IndexError) as e:
            raise InfrastructureError(
                f"Invalid command template for {self.name}: unknown placeholder {e}",
                environment=self.name, role=role.value,
            ) from e

        try:
            popen = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=self._build_environment(role, case, context),
                cwd=self.environment.working_dir,
                start_new_session=True,
            )
        except OSError as e:
            raise InfrastructureError(
                f"Failed to start {role.value} {self.name}: {e}",
                environment=self.name, role=role.value,
            ) from e

        process = _NativeProcess(
            popen=popen,
            events=queue.Queue(),
            reader=threading.Thread(
                target=self._pump_output,
                args=(handle, popen),
                name=f"{self.name}-{role.value}-{case.index}",
                daemon=True,
            ),
        )
        handle.resource = process
        process.reader.start()
        logger.debug(f"Started {role.value} {self.name} (pid {popen.pid}) for {case.case_id}")
        return handle

    def _pump_output(self, handle: ParticipantHandle, popen: subprocess.Popen) -> None:
        """Reader thread: split stdout into raw log lines and events."""
        events = handle.resource.events
        for line in popen.stdout:
            line = line.rstrip("\r\n")
            handle.append_log(line)
            event = parse_event_line(line)
            if event is not None:
                events.put(event)
        code = popen.wait()
        events.put(ParticipantEvent(event=EventType.EXIT, data={"event": "exit", "code": code}, raw=""))

    def _read_event(self, handle: ParticipantHandle, timeout: float) -> Optional[ParticipantEvent]:
        process: _NativeProcess = handle.resource
        if process.exit_event is not None and process.events.empty():
            return process.exit_event
        try:
            event = process.events.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None
        if event.event == EventType.EXIT:
            process.exit_event = event
            handle.exit_code = event.get("code")
        return event

    def _is_ready(self, handle: ParticipantHandle) -> bool:
        if handle.ready:
            return True
        if handle.role == Role.LISTENER and handle.context.store.exists(handle.context.listener_key):
            handle.ready = True
        return handle.ready

    def deliver_rendezvous(self, handle: ParticipantHandle, record: RendezvousRecord) -> None:
        # Native participants read the store themselves
        logger.debug(f"{self.name} dialer reads {record.test_case_id} from the store directly")

    def stop(self, handle: ParticipantHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        process: Optional[_NativeProcess] = handle.resource
        if process is None:
            return
        code = terminate_process_tree(process.popen, self.settings.stop_grace)
        if handle.exit_code is None:
            handle.exit_code = code
        process.reader.join(timeout=self.settings.stop_grace)
        if process.popen.stdout is not None and not process.reader.is_alive():
            process.popen.stdout.close()
        logger.debug(f"Stopped {handle.role.value} {self.name} (exit {code})")
