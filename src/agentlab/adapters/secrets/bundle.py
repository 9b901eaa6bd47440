"""File-backed secret bundles.

A bundle named ``default`` is looked up under ``secrets_dir`` as
``default.age``, then ``default.sops.{yaml,yml,json}``, then (only when
plaintext is allowed) ``default.{yaml,yml,json}``. Encrypted bundles are
decrypted by the ``age`` and ``sops`` CLIs; the payload is YAML.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from agentlab.core.errors import DecryptError, ValidationError
from agentlab.core.interfaces import SecretStore

logger = logging.getLogger(__name__)

BUNDLE_VERSION = 1

_ENCRYPTED_SUFFIXES = (".age", ".sops.yaml", ".sops.yml", ".sops.json")
_PLAINTEXT_SUFFIXES = (".yaml", ".yml", ".json")


def looks_like_sops(name: str, data: bytes) -> bool:
    lower = name.lower()
    if ".sops." in lower or lower.endswith(".sops"):
        return True
    if b"\nsops:" in data:
        return True
    return b'"sops"' in data


def parse_bundle(data: bytes | str) -> dict[str, Any]:
    """Parse a decrypted bundle and check its version.

    Raises:
        ValueError: On bad YAML, a non-mapping document or unknown version
    """
    try:
        bundle = yaml.safe_load(data) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid bundle YAML: {e}") from e
    if not isinstance(bundle, dict):
        raise ValueError("bundle must be a mapping")
    version = bundle.get("version") or BUNDLE_VERSION
    if version != BUNDLE_VERSION:
        raise ValueError(f"unsupported bundle version {version}")
    bundle["version"] = version
    return bundle


class FileSecretStore(SecretStore):
    """SecretStore over files in a directory."""

    def __init__(
        self,
        secrets_dir: str | Path,
        age_key_path: str = "",
        sops_path: str = "sops",
        age_path: str = "age",
        allow_plaintext: bool = False,
    ) -> None:
        self._dir = Path(secrets_dir)
        self._age_key_path = age_key_path.strip()
        self._sops_path = sops_path.strip() or "sops"
        self._age_path = age_path
        self._allow_plaintext = allow_plaintext

    def resolve(self, name: str) -> Path:
        """Find the bundle file for a name.

        Raises:
            ValidationError: If name is empty
            DecryptError: If no candidate file exists
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("bundle name is required")

        bases = [Path(name)] if Path(name).is_absolute() else [self._dir / name, Path(name)]
        if Path(name).suffix:
            for base in bases:
                if base.is_file():
                    return base
            raise DecryptError(f"bundle {name} not found")

        suffixes = _ENCRYPTED_SUFFIXES
        if self._allow_plaintext:
            suffixes = suffixes + _PLAINTEXT_SUFFIXES
        for base in bases:
            for suffix in suffixes:
                candidate = base.with_name(base.name + suffix)
                if candidate.is_file():
                    return candidate
        raise DecryptError(f"bundle {name} not found")

    async def load(self, name: str) -> dict[str, Any]:
        path = self.resolve(name)
        payload = await self._decrypt(path)
        try:
            return parse_bundle(payload)
        except ValueError as e:
            raise DecryptError(f"parse bundle {path}: {e}") from e

    async def _decrypt(self, path: Path) -> bytes:
        lower = path.name.lower()
        if lower.endswith(".age"):
            if not self._age_key_path:
                raise DecryptError("age key path is required for .age bundles")
            return await self._run([self._age_path, "-d", "-i", self._age_key_path, str(path)])

        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise DecryptError(f"read bundle {path}: {e}") from e
        if looks_like_sops(lower, data):
            env = None
            if self._age_key_path:
                env = {**os.environ, "SOPS_AGE_KEY_FILE": self._age_key_path}
            return await self._run([self._sops_path, "-d", str(path)], env=env)
        if self._allow_plaintext:
            return data
        raise DecryptError(f"bundle {path} is not encrypted (.age or sops)")

    async def _run(self, command: list[str], env: dict[str, str] | None = None) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise DecryptError(f"{command[0]}: {e}") from e
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            # stderr of age/sops never contains plaintext
            detail = stderr.decode(errors="replace").strip()
            raise DecryptError(f"{command[0]} -d failed with exit {proc.returncode}: {detail}")
        return stdout
