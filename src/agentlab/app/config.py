"""Application configuration using pydantic-settings.

Values come from the YAML config file, overridden by ``AGENTLAB_<KEY>``
environment variables (nested sections use ``AGENTLAB_LOGGING__LEVEL``
or their own prefix, e.g. ``AGENTLAB_LOGGING_LEVEL``).
"""

import ipaddress
import re
from datetime import timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import Field, ValidationError as PydanticValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from agentlab.core.errors import ValidationError

DEFAULT_CONFIG_PATH = "/etc/agentlab/config.yaml"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
_WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::", "[::]"})


def parse_duration(value: Any) -> timedelta:
    """Parse a Go-style duration (``90s``, ``1h30m``, ``-5m``, ``0``).

    Plain numbers are seconds.

    Raises:
        ValueError: If the string is not a duration
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    raw = str(value).strip()
    if not raw:
        raise ValueError("empty duration")
    sign = 1
    if raw[0] in "+-":
        sign = -1 if raw[0] == "-" else 1
        raw = raw[1:]
    if raw == "0":
        return timedelta(0)
    pos = 0
    total = timedelta(0)
    for match in _DURATION_PART_RE.finditer(raw):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(raw) or pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return sign * total


def split_host_port(addr: str) -> tuple[str, int]:
    """Split ``host:port`` / ``[v6]:port``.

    Raises:
        ValueError: If the address has no valid port
    """
    addr = addr.strip()
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"IPv6 host must be bracketed in {addr!r}")
    if not port.isdigit() or not 0 < int(port) <= 65535:
        raise ValueError(f"invalid port in address {addr!r}")
    return host, int(port)


def is_loopback_host(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _check_http_url(field: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https"):
        raise ValueError(f"{field} must use http or https")
    if not parsed.hostname:
        raise ValueError(f"{field} must include a host")


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Standard fields added to all logs:
    - schema_version: Log schema version for backwards compatibility
    - service: Service name (agentlabd)

    Rate limiting:
    - Prevents log storms from repeated messages
    - ERROR logs bypass rate limiting (always logged)
    """

    model_config = SettingsConfigDict(env_prefix="AGENTLAB_LOGGING_")

    level: str = Field(default="INFO")
    schema_version: str = Field(default="1.0")
    slow_threshold_ms: float = Field(default=1000.0)  # reconcile ticks slower than this log WARN
    rate_limit_per_minute: int = Field(default=100)  # same message, per minute
    service_name: str = Field(default="agentlabd")


class CoordinatorConfig(BaseSettings):
    """Periodic task timing configuration."""

    model_config = SettingsConfigDict(env_prefix="AGENTLAB_COORDINATOR_")

    min_interval: float = Field(default=1.0)  # seconds between ticks at minimum
    lease_interval: float = Field(default=30.0)  # seconds (lease reconciler)
    state_interval: float = Field(default=60.0)  # seconds (hypervisor state reconciler)
    gc_interval: float = Field(default=600.0)  # seconds (artifact GC, 10 minutes)
    cleanup_timeout: float = Field(default=30.0)  # seconds (failure compensation)


class Settings(BaseSettings):
    """Daemon configuration (YAML + ``AGENTLAB_*`` environment)."""

    model_config = SettingsConfigDict(
        env_prefix="AGENTLAB_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    config_path: str = Field(default=DEFAULT_CONFIG_PATH)

    # Filesystem roots
    profiles_dir: str = Field(default="/etc/agentlab/profiles")
    data_dir: str = Field(default="/var/lib/agentlab")
    log_dir: str = Field(default="/var/log/agentlab")
    run_dir: str = Field(default="/run/agentlab")
    socket_path: str = Field(default="")  # <run_dir>/agentlabd.sock
    db_path: str = Field(default="")  # <data_dir>/agentlab.db
    artifact_dir: str = Field(default="")  # <data_dir>/artifacts
    snippets_dir: str = Field(default="/var/lib/vz/snippets")
    snippet_storage: str = Field(default="local")

    # Listeners
    bootstrap_listen: str = Field(default="10.77.0.1:8844")
    artifact_listen: str = Field(default="10.77.0.1:8846")
    metrics_listen: str = Field(default="")  # disabled when empty
    agent_subnet: str = Field(default="")
    controller_url: str = Field(default="")
    artifact_upload_url: str = Field(default="")

    # Artifacts
    artifact_max_bytes: int = Field(default=256 * 1024 * 1024)
    artifact_token_ttl_minutes: int = Field(default=1440)  # 24 hours

    # Secrets
    secrets_dir: str = Field(default="/etc/agentlab/secrets")
    secrets_bundle: str = Field(default="default")
    secrets_age_key_path: str = Field(default="/etc/agentlab/keys/age.key")
    secrets_sops_path: str = Field(default="sops")
    secrets_allow_plaintext: bool = Field(default=False)

    # Hypervisor
    proxmox_command_timeout: timedelta = Field(default=timedelta(minutes=2))
    provisioning_timeout: timedelta = Field(default=timedelta(minutes=10))
    proxmox_backend: str = Field(default="shell")  # shell | api
    proxmox_api_url: str = Field(default="https://localhost:8006")
    proxmox_api_token: str = Field(default="")
    proxmox_node: str = Field(default="")
    proxmox_tls_insecure: bool = Field(default=False)
    vmid_start: int = Field(default=1000)

    # Leases
    bootstrap_token_ttl: timedelta = Field(default=timedelta(minutes=10))
    workspace_lease_ttl: timedelta = Field(default=timedelta(minutes=30))

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; environment overrides them
        return env_settings, init_settings

    @field_validator(
        "proxmox_command_timeout",
        "provisioning_timeout",
        "bootstrap_token_ttl",
        "workspace_lease_ttl",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, v: Any) -> timedelta:
        return parse_duration(v)

    @field_validator("proxmox_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, v: Any) -> str:
        return str(v or "shell").strip().lower()

    @model_validator(mode="after")
    def _derive_and_validate(self) -> "Settings":
        for field in ("profiles_dir", "data_dir", "log_dir", "run_dir"):
            if not getattr(self, field).strip():
                raise ValueError(f"{field} is required")

        if not self.socket_path:
            self.socket_path = str(Path(self.run_dir) / "agentlabd.sock")
        if not self.db_path:
            self.db_path = str(Path(self.data_dir) / "agentlab.db")
        if not self.artifact_dir:
            self.artifact_dir = str(Path(self.data_dir) / "artifacts")

        if self.agent_subnet:
            try:
                ipaddress.ip_network(self.agent_subnet, strict=False)
            except ValueError as e:
                raise ValueError(f"agent_subnet is not a valid CIDR: {e}") from e

        for field, url_field in (
            ("bootstrap_listen", "controller_url"),
            ("artifact_listen", "artifact_upload_url"),
        ):
            host, _ = split_host_port(getattr(self, field))
            if host in _WILDCARD_HOSTS:
                if not self.agent_subnet:
                    raise ValueError(f"{field} on a wildcard host requires agent_subnet")
                if not getattr(self, url_field):
                    raise ValueError(f"{field} on a wildcard host requires {url_field}")

        if self.metrics_listen:
            host, _ = split_host_port(self.metrics_listen)
            if not is_loopback_host(host):
                raise ValueError("metrics_listen must be a loopback address")

        for field in ("controller_url", "artifact_upload_url", "proxmox_api_url"):
            value = getattr(self, field)
            if value:
                _check_http_url(field, value)

        if self.artifact_max_bytes <= 0:
            raise ValueError("artifact_max_bytes must be positive")
        if self.artifact_token_ttl_minutes <= 0:
            raise ValueError("artifact_token_ttl_minutes must be positive")

        for field in (
            "proxmox_command_timeout",
            "provisioning_timeout",
            "bootstrap_token_ttl",
            "workspace_lease_ttl",
        ):
            if getattr(self, field) < timedelta(0):
                raise ValueError(f"{field} must not be negative")

        if self.proxmox_backend not in ("shell", "api"):
            raise ValueError("proxmox_backend must be 'shell' or 'api'")
        if self.proxmox_backend == "api" and not self.proxmox_api_token.strip():
            raise ValueError("proxmox_api_token is required when proxmox_backend is 'api'")
        if self.vmid_start <= 0:
            raise ValueError("vmid_start must be positive")
        return self

    @property
    def artifact_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.artifact_token_ttl_minutes)


def load_settings(path: str | None = None) -> Settings:
    """Read the YAML config file and apply environment overrides.

    Raises:
        ValidationError: If the file is unreadable, not a YAML mapping, or
            any value fails validation
    """
    config_path = Path(path or DEFAULT_CONFIG_PATH)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"read config {config_path}: {e}") from e
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"parse config {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"parse config {config_path}: top level must be a mapping")

    data["config_path"] = str(config_path)
    try:
        return Settings(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid config {config_path}: {e}") from e
