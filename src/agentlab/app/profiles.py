"""Profile YAML loading.

Only the fields the controller core consumes are modelled: the template
to clone, VM sizing, the default sandbox TTL and the artifact retention
window. Unknown keys are kept out of the model.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from agentlab.core.errors import ValidationError

logger = logging.getLogger(__name__)

_RETENTION_KEYS = (
    ("ttl_minutes", timedelta(minutes=1)),
    ("retention_minutes", timedelta(minutes=1)),
    ("retention_hours", timedelta(hours=1)),
    ("retention_days", timedelta(days=1)),
)


class Profile(BaseModel):
    """Sandbox profile."""

    model_config = ConfigDict(extra="ignore")

    name: str
    template_vmid: int = Field(gt=0)
    cores: int | None = None
    memory_mb: int | None = None
    ttl_minutes: int | None = None  # sandbox lease; None means no TTL
    artifact_retention: timedelta | None = None


def parse_artifact_retention(data: dict[str, Any]) -> timedelta | None:
    """Read ``artifacts.{ttl_minutes,retention_*}``; first key present wins.

    Raises:
        ValueError: If the value is not a positive integer
    """
    section = data.get("artifacts") or {}
    if not isinstance(section, dict):
        raise ValueError("artifacts must be a mapping")
    for key, unit in _RETENTION_KEYS:
        if key in section and section[key] is not None:
            value = section[key]
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"artifacts.{key} must be a positive integer")
            return value * unit
    return None


def parse_profile(data: dict[str, Any]) -> Profile:
    vm = data.get("vm") or {}
    behavior = data.get("behavior") or {}
    return Profile(
        name=str(data.get("name", "")).strip(),
        template_vmid=data.get("template_vmid", 0),
        cores=vm.get("cores"),
        memory_mb=vm.get("memory_mb"),
        ttl_minutes=behavior.get("ttl_minutes_default"),
        artifact_retention=parse_artifact_retention(data),
    )


def load_profiles(profiles_dir: str | Path) -> dict[str, Profile]:
    """Load every ``*.yaml``/``*.yml`` profile in a directory.

    Raises:
        ValidationError: On unreadable files, bad YAML or duplicate names
    """
    root = Path(profiles_dir)
    profiles: dict[str, Profile] = {}
    if not root.is_dir():
        logger.warning("Profiles dir %s does not exist", root)
        return profiles

    for path in sorted([*root.glob("*.yaml"), *root.glob("*.yml")]):
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError("top level must be a mapping")
            profile = parse_profile(data)
        except (OSError, yaml.YAMLError, ValueError, PydanticValidationError) as e:
            raise ValidationError(f"profile {path}: {e}") from e
        if not profile.name:
            raise ValidationError(f"profile {path}: name is required")
        if profile.name in profiles:
            raise ValidationError(f"duplicate profile {profile.name!r} in {path}")
        profiles[profile.name] = profile
    return profiles
