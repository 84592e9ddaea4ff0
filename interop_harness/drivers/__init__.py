"""
Environment drivers for native and browser participants.
"""

from typing import Optional

from .base import (
    EnvironmentDriver, ParticipantContext, ParticipantEvent, ParticipantHandle,
    parse_event_line, error_from_event,
)
from .native import NativeDriver
from .browser import BrowserDriver
from ..config import BrowserConfig, EnvironmentConfig, SettingsConfig
from ..exceptions import ConfigurationError
from ..utils.constants import EnvironmentKind


def create_driver(
    environment: EnvironmentConfig,
    settings: SettingsConfig,
    browser: Optional[BrowserConfig] = None,
    asset_url: Optional[str] = None
) -> EnvironmentDriver:
    """Build the driver matching an environment's kind."""
    if environment.kind == EnvironmentKind.NATIVE:
        return NativeDriver(environment, settings)
    if asset_url is None:
        raise ConfigurationError(
            f"Browser environment '{environment.name}' needs a running asset server",
            field="asset_server",
        )
    return BrowserDriver(environment, settings, browser or BrowserConfig(), asset_url)


__all__ = [
    "EnvironmentDriver",
    "ParticipantContext",
    "ParticipantEvent",
    "ParticipantHandle",
    "NativeDriver",
    "BrowserDriver",
    "parse_event_line",
    "error_from_event",
    "create_driver",
]
