"""
Browser environment driver.

Drives a participant inside a browser through a remote WebDriver session.
The page at the asset server runs the stack's browser build; its console
output is mirrored into a buffer the driver drains, and bootstrap records
are relayed in and out of the page since it cannot reach the store.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional
from urllib.parse import urlencode
import logging

import urllib3
from selenium import webdriver
from selenium.common.exceptions import WebDriverException

from .base import (
    EnvironmentDriver, ParticipantContext, ParticipantEvent, ParticipantHandle,
    parse_event_line,
)
from ..config import BrowserConfig, EnvironmentConfig, SettingsConfig
from ..exceptions import InfrastructureError
from ..matrix import MatrixCase
from ..rendezvous import RendezvousRecord
from ..utils.constants import Role, EventType
from ..utils.deadline import Deadline

logger = logging.getLogger(__name__)

_DRAIN_SCRIPT = "return window.__interopDrain ? window.__interopDrain() : [];"
_RENDEZVOUS_SCRIPT = "window.interopRendezvous(arguments[0]);"

# Errors raised by the WebDriver protocol or by the HTTP connection under it
SESSION_ERRORS = (WebDriverException, urllib3.exceptions.HTTPError, OSError)


def _describe(error: Exception) -> str:
    return str(getattr(error, "msg", None) or error)


@dataclass
class _BrowserSession:
    session: webdriver.Remote
    buffer: Deque[ParticipantEvent] = field(default_factory=deque)
    exit_event: Optional[ParticipantEvent] = None


class BrowserDriver(EnvironmentDriver):
    """Driver for participants running in a remotely automated browser."""

    def __init__(
        self,
        environment: EnvironmentConfig,
        settings: SettingsConfig,
        browser: BrowserConfig,
        asset_url: str
    ):
        """
        Initialize browser driver.

        Args:
            environment: Environment entry with the capability set
            settings: Runtime settings (poll interval)
            browser: WebDriver endpoint and browser choice
            asset_url: Base URL of the asset server as seen by the browser
        """
        super().__init__(environment, settings)
        self.browser = browser
        self.asset_url = asset_url.rstrip("/")

    def _options(self):
        if self.browser.browser == "firefox":
            options = webdriver.FirefoxOptions()
            if self.browser.headless:
                options.add_argument("-headless")
        else:
            options = webdriver.ChromeOptions()
            if self.browser.headless:
                options.add_argument("--headless=new")
            options.add_argument("--no-sandbox")
            options.add_argument("--disable-dev-shm-usage")
        for arg in self.browser.extra_args:
            options.add_argument(arg)
        return options

    def page_url(self, role: Role, case: MatrixCase, context: ParticipantContext) -> str:
        """URL of the test client page, with the case parameters in the query."""
        query = urlencode({
            "role": role.value,
            "transport": case.transport.value,
            "security": case.security.value,
            "muxer": case.muxer.value,
            "case": case.case_id,
            "probe": context.probe.hex(),
            "timeout": int(context.timeout),
        })
        return f"{self.asset_url}/?{query}"

    def start(self, role: Role, case: MatrixCase, context: ParticipantContext) -> ParticipantHandle:
        handle = ParticipantHandle(environment=self.name, role=role, case=case, context=context)
        try:
            session = webdriver.Remote(
                command_executor=self.browser.webdriver_url,
                options=self._options(),
            )
        except SESSION_ERRORS as e:
            raise InfrastructureError(
                f"Could not create {self.browser.browser} session at {self.browser.webdriver_url}: {_describe(e)}",
                environment=self.name, role=role.value,
            ) from e
        handle.resource = _BrowserSession(session=session)

        url = self.page_url(role, case, context)
        try:
            session.get(url)
        except SESSION_ERRORS as e:
            self.stop(handle)
            raise InfrastructureError(
                f"Could not load test client at {url}: {_describe(e)}",
                environment=self.name, role=role.value,
            ) from e
        logger.debug(f"Started {role.value} {self.name} at {url}")
        return handle

    def _drain(self, handle: ParticipantHandle) -> None:
        browser: _BrowserSession = handle.resource
        try:
            lines = browser.session.execute_script(_DRAIN_SCRIPT) or []
        except SESSION_ERRORS as e:
            # The session is gone; report it the way a process exit is reported
            handle.append_log(f"webdriver error: {_describe(e)}")
            browser.exit_event = ParticipantEvent(
                event=EventType.EXIT,
                data={"event": "exit", "code": None, "message": _describe(e)},
                raw="",
            )
            return
        for line in lines:
            line = str(line)
            handle.append_log(line)
            event = parse_event_line(line)
            if event is not None:
                browser.buffer.append(event)

    def _read_event(self, handle: ParticipantHandle, timeout: float) -> Optional[ParticipantEvent]:
        browser: _BrowserSession = handle.resource
        deadline = Deadline(timeout)
        while True:
            if browser.buffer:
                return browser.buffer.popleft()
            if browser.exit_event is not None:
                return browser.exit_event
            self._drain(handle)
            if browser.buffer or browser.exit_event is not None:
                continue
            if deadline.expired():
                return None
            time.sleep(deadline.clamp(self.settings.poll_interval))

    def _is_ready(self, handle: ParticipantHandle) -> bool:
        # A page listener is only useful once its record is in the store
        if handle.role == Role.LISTENER:
            return handle.published
        return handle.ready

    def deliver_rendezvous(self, handle: ParticipantHandle, record: RendezvousRecord) -> None:
        browser: _BrowserSession = handle.resource
        try:
            browser.session.execute_script(_RENDEZVOUS_SCRIPT, record.to_json())
        except SESSION_ERRORS as e:
            raise InfrastructureError(
                f"Could not hand rendezvous record to {self.name}: {_describe(e)}",
                environment=self.name, role=handle.role.value,
            ) from e
        logger.debug(f"Delivered rendezvous record to {self.name} for {record.test_case_id}")

    def stop(self, handle: ParticipantHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        browser: Optional[_BrowserSession] = handle.resource
        if browser is None:
            return
        try:
            # Pick up anything logged since the last poll before the page goes away
            if browser.exit_event is None:
                self._drain(handle)
            browser.session.quit()
        except SESSION_ERRORS as e:
            raise InfrastructureError(
                f"Failed to close {self.browser.browser} session: {_describe(e)}",
                environment=self.name, role=handle.role.value,
            ) from e
        logger.debug(f"Closed {handle.role.value} {self.name} session")
