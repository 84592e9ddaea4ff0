"""
Pydantic models for configuration validation.

This module provides type-safe configuration models with validation
for the matrix definition consumed by the P2P Interop Harness.
"""

import re
from typing import Optional, Dict, List, Literal
from pydantic import BaseModel, Field, field_validator, model_validator

from .utils.constants import (
    Transport, SecurityScheme, Multiplexer, EnvironmentKind, BROWSER_TRANSPORTS,
    DEFAULT_TEST_TIMEOUT, DEFAULT_READY_TIMEOUT, DEFAULT_RENDEZVOUS_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT, DEFAULT_ECHO_TIMEOUT, DEFAULT_STOP_GRACE,
    DEFAULT_POLL_INTERVAL, DEFAULT_PARALLEL_TESTS, MAX_PARALLEL_TESTS,
    DEFAULT_MAX_ATTEMPTS, DEFAULT_PROBE_SIZE, DEFAULT_RESULTS_DIR,
    DEFAULT_REDIS_URL, DEFAULT_KEY_NAMESPACE, DEFAULT_RECORD_TTL,
)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class OutputConfig(BaseModel):
    """Output configuration settings."""
    format: Literal["canonical", "ndjson"] = "canonical"
    results_dir: str = DEFAULT_RESULTS_DIR
    include_raw_logs: bool = True

    @field_validator("results_dir")
    @classmethod
    def validate_results_dir(cls, v: str) -> str:
        """Validate results directory path."""
        if not v:
            raise ValueError("results_dir cannot be empty")
        return v


class SettingsConfig(BaseModel):
    """Runtime settings configuration. All durations are in seconds."""
    parallel_tests: int = Field(DEFAULT_PARALLEL_TESTS, ge=1, le=MAX_PARALLEL_TESTS)
    test_timeout: float = Field(DEFAULT_TEST_TIMEOUT, gt=0, le=3600)
    ready_timeout: float = Field(DEFAULT_READY_TIMEOUT, gt=0)
    rendezvous_timeout: float = Field(DEFAULT_RENDEZVOUS_TIMEOUT, gt=0)
    connect_timeout: float = Field(DEFAULT_CONNECT_TIMEOUT, gt=0)
    echo_timeout: float = Field(DEFAULT_ECHO_TIMEOUT, gt=0)
    stop_grace: float = Field(DEFAULT_STOP_GRACE, ge=0)
    poll_interval: float = Field(DEFAULT_POLL_INTERVAL, gt=0, le=5)
    max_attempts: int = Field(DEFAULT_MAX_ATTEMPTS, ge=1, le=10)
    probe_size: int = Field(DEFAULT_PROBE_SIZE, ge=1, le=65536)

    @model_validator(mode="after")
    def validate_echo_shorter_than_connect(self) -> "SettingsConfig":
        """The echo deadline is the second, shorter deadline."""
        if self.echo_timeout > self.connect_timeout:
            raise ValueError(
                f"echo_timeout ({self.echo_timeout}) must not exceed "
                f"connect_timeout ({self.connect_timeout})"
            )
        return self


class RendezvousConfig(BaseModel):
    """Rendezvous store connection settings."""
    url: str = DEFAULT_REDIS_URL
    namespace: str = DEFAULT_KEY_NAMESPACE
    ttl: int = Field(DEFAULT_RECORD_TTL, ge=1)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"Unsupported rendezvous URL scheme: {v}")
        return v


class BrowserConfig(BaseModel):
    """Remote browser automation settings."""
    webdriver_url: str = "http://localhost:4444"
    browser: Literal["chrome", "firefox"] = "chrome"
    headless: bool = True
    extra_args: List[str] = Field(default_factory=list)


class AssetServerConfig(BaseModel):
    """Settings for the HTTP server that hosts the browser test client."""
    host: str = "127.0.0.1"
    port: int = Field(0, ge=0, le=65535)
    bundle_dir: Optional[str] = None
    # Address the browser uses to reach the server, when it differs from host:port
    public_url: Optional[str] = None


class EnvironmentConfig(BaseModel):
    """A participant environment and the capability set it advertises."""
    name: str
    kind: EnvironmentKind
    description: Optional[str] = None
    command: List[str] = Field(default_factory=list)
    working_dir: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    transports: List[Transport]
    security: List[SecurityScheme]
    muxers: List[Multiplexer]

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names end up in store keys and URLs."""
        if not _NAME_RE.match(v):
            raise ValueError(f"Invalid environment name: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_kind(self) -> "EnvironmentConfig":
        """Native environments need a command; browsers a legal transport set."""
        if self.kind == EnvironmentKind.NATIVE and not self.command:
            raise ValueError(f"Native environment '{self.name}' requires a command")
        if self.kind == EnvironmentKind.BROWSER:
            illegal = [t.value for t in self.transports if t not in BROWSER_TRANSPORTS]
            if illegal:
                raise ValueError(
                    f"Browser environment '{self.name}' cannot use transports: {illegal}"
                )
        return self


class PairingConfig(BaseModel):
    """An ordered (dialer, listener) environment pair."""
    dialer: str
    listener: str


class ExclusionConfig(BaseModel):
    """
    A known-incompatible slice of the matrix.

    Every field that is set must match for a case to be excluded.
    """
    dialer: Optional[str] = None
    listener: Optional[str] = None
    transport: Optional[Transport] = None
    security: Optional[SecurityScheme] = None
    muxer: Optional[Multiplexer] = None
    reason: Optional[str] = None


class MatrixConfig(BaseModel):
    """Axes of the test matrix."""
    transports: List[Transport]
    security: List[SecurityScheme]
    muxers: List[Multiplexer]
    # None means every ordered pair of environments
    pairings: Optional[List[PairingConfig]] = None
    exclude: List[ExclusionConfig] = Field(default_factory=list)

    @field_validator("transports", "security", "muxers")
    @classmethod
    def validate_axis(cls, v: list, info) -> list:
        if not v:
            raise ValueError(f"matrix.{info.field_name} cannot be empty")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate values in matrix.{info.field_name}")
        return v


class HarnessConfig(BaseModel):
    """Complete harness configuration model."""
    output: OutputConfig = Field(default_factory=OutputConfig)
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    rendezvous: RendezvousConfig = Field(default_factory=RendezvousConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    asset_server: AssetServerConfig = Field(default_factory=AssetServerConfig)
    environments: List[EnvironmentConfig]
    matrix: MatrixConfig

    @field_validator("environments")
    @classmethod
    def validate_environments(cls, v: List[EnvironmentConfig]) -> List[EnvironmentConfig]:
        """Validate environments structure."""
        if not v:
            raise ValueError("environments section cannot be empty")
        names = [e.name for e in v]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate environment names: {sorted(duplicates)}")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "HarnessConfig":
        """Pairings and exclusions must name declared environments."""
        known = {e.name for e in self.environments}
        for pairing in self.matrix.pairings or []:
            for name in (pairing.dialer, pairing.listener):
                if name not in known:
                    raise ValueError(f"Pairing references unknown environment '{name}'")
        pairs = [(p.dialer, p.listener) for p in self.matrix.pairings or []]
        repeated = sorted({f"{d}->{l}" for d, l in pairs if pairs.count((d, l)) > 1})
        if repeated:
            raise ValueError(f"Duplicate pairings: {repeated}")
        for exclusion in self.matrix.exclude:
            for name in (exclusion.dialer, exclusion.listener):
                if name is not None and name not in known:
                    raise ValueError(f"Exclusion references unknown environment '{name}'")
        return self

    @classmethod
    def load_from_file(cls, config_path: str) -> "HarnessConfig":
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Validated HarnessConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        import yaml
        from pathlib import Path

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in configuration file: {e}")

        if raw_config is None:
            raise ValueError("Configuration file is empty")

        try:
            return cls.model_validate(raw_config)
        except Exception as e:
            raise ValueError(f"Invalid configuration: {e}")

    def get_environment(self, name: str) -> Optional[EnvironmentConfig]:
        """
        Get an environment by name.

        Args:
            name: Environment name

        Returns:
            EnvironmentConfig if found, None otherwise
        """
        for environment in self.environments:
            if environment.name == name:
                return environment
        return None

    def get_pairings(self) -> List[PairingConfig]:
        """
        Get the ordered (dialer, listener) pairs to test.

        Returns:
            Configured pairings, or every ordered pair (including
            self-pairs) in declaration order
        """
        if self.matrix.pairings is not None:
            return list(self.matrix.pairings)
        return [
            PairingConfig(dialer=d.name, listener=l.name)
            for d in self.environments
            for l in self.environments
        ]

    def uses_browser(self) -> bool:
        """Whether any configured pairing involves a browser environment."""
        kinds = {e.name: e.kind for e in self.environments}
        return any(
            EnvironmentKind.BROWSER in (kinds[p.dialer], kinds[p.listener])
            for p in self.get_pairings()
        )
