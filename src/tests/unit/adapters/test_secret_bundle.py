"""Tests for FileSecretStore."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentlab.adapters.secrets.bundle import FileSecretStore, looks_like_sops, parse_bundle
from agentlab.core.errors import DecryptError, ValidationError

EXEC = "agentlab.adapters.secrets.bundle.asyncio.create_subprocess_exec"

PLAIN = b"version: 1\nenv:\n  API_KEY: abc\n"


def _proc(stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.returncode = returncode
    return proc


class TestParseBundle:
    def test_defaults_version(self) -> None:
        assert parse_bundle(b"env: {A: b}") == {"version": 1, "env": {"A": "b"}}

    def test_empty_document(self) -> None:
        assert parse_bundle(b"") == {"version": 1}

    @pytest.mark.parametrize("data", [b"version: 2", b"- a\n- b\n", b"key: [unclosed"])
    def test_rejects(self, data: bytes) -> None:
        with pytest.raises(ValueError):
            parse_bundle(data)


class TestLooksLikeSops:
    def test_by_name(self) -> None:
        assert looks_like_sops("default.sops.yaml", b"")

    def test_by_yaml_metadata(self) -> None:
        assert looks_like_sops("default.yaml", b"env: ENC[...]\nsops:\n  version: 3.8\n")

    def test_by_json_metadata(self) -> None:
        assert looks_like_sops("default.json", b'{"env": {}, "sops": {}}')

    def test_plain(self) -> None:
        assert not looks_like_sops("default.yaml", PLAIN)


class TestResolve:
    def test_encrypted_preferred(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_bytes(PLAIN)
        (tmp_path / "default.sops.yaml").write_bytes(b"sops: {}")
        (tmp_path / "default.age").write_bytes(b"age")
        store = FileSecretStore(tmp_path, allow_plaintext=True)
        assert store.resolve("default") == tmp_path / "default.age"

    def test_plaintext_needs_opt_in(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_bytes(PLAIN)
        with pytest.raises(DecryptError):
            FileSecretStore(tmp_path).resolve("default")
        assert FileSecretStore(tmp_path, allow_plaintext=True).resolve("default") == tmp_path / "default.yaml"

    def test_explicit_suffix(self, tmp_path: Path) -> None:
        (tmp_path / "other.sops.json").write_bytes(b"{}")
        assert FileSecretStore(tmp_path).resolve("other.sops.json") == tmp_path / "other.sops.json"

    def test_absolute_path(self, tmp_path: Path) -> None:
        bundle = tmp_path / "abs.age"
        bundle.write_bytes(b"age")
        assert FileSecretStore(tmp_path / "elsewhere").resolve(str(bundle)) == bundle

    def test_empty_name(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError):
            FileSecretStore(tmp_path).resolve(" ")

    def test_missing(self, tmp_path: Path) -> None:
        with pytest.raises(DecryptError, match="not found"):
            FileSecretStore(tmp_path).resolve("nope")


class TestLoad:
    @pytest.mark.asyncio
    async def test_plaintext(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_bytes(PLAIN)
        bundle = await FileSecretStore(tmp_path, allow_plaintext=True).load("default")
        assert bundle == {"version": 1, "env": {"API_KEY": "abc"}}

    @pytest.mark.asyncio
    async def test_plaintext_by_suffix_denied(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_bytes(PLAIN)
        with pytest.raises(DecryptError, match="not encrypted"):
            await FileSecretStore(tmp_path).load("default.yaml")

    @pytest.mark.asyncio
    async def test_age(self, tmp_path: Path) -> None:
        (tmp_path / "default.age").write_bytes(b"age-encrypted")
        store = FileSecretStore(tmp_path, age_key_path="/keys/age.key", age_path="/usr/bin/age")
        with patch(EXEC, new=AsyncMock(return_value=_proc(PLAIN))) as exec_mock:
            bundle = await store.load("default")
        assert bundle["env"] == {"API_KEY": "abc"}
        assert list(exec_mock.await_args.args) == [
            "/usr/bin/age", "-d", "-i", "/keys/age.key", str(tmp_path / "default.age"),
        ]

    @pytest.mark.asyncio
    async def test_age_without_key(self, tmp_path: Path) -> None:
        (tmp_path / "default.age").write_bytes(b"age-encrypted")
        with pytest.raises(DecryptError, match="age key"):
            await FileSecretStore(tmp_path).load("default")

    @pytest.mark.asyncio
    async def test_sops_sets_key_file(self, tmp_path: Path) -> None:
        (tmp_path / "default.sops.yaml").write_bytes(b"env: ENC[x]\nsops:\n  age: []\n")
        store = FileSecretStore(tmp_path, age_key_path="/keys/age.key")
        with patch(EXEC, new=AsyncMock(return_value=_proc(PLAIN))) as exec_mock:
            await store.load("default")
        assert list(exec_mock.await_args.args) == ["sops", "-d", str(tmp_path / "default.sops.yaml")]
        assert exec_mock.await_args.kwargs["env"]["SOPS_AGE_KEY_FILE"] == "/keys/age.key"

    @pytest.mark.asyncio
    async def test_tool_failure(self, tmp_path: Path) -> None:
        (tmp_path / "default.sops.yaml").write_bytes(b"sops: {}")
        proc = _proc(stderr=b"Failed to get the data key", returncode=128)
        with patch(EXEC, new=AsyncMock(return_value=proc)):
            with pytest.raises(DecryptError, match="exit 128"):
                await FileSecretStore(tmp_path).load("default")

    @pytest.mark.asyncio
    async def test_tool_missing(self, tmp_path: Path) -> None:
        (tmp_path / "default.sops.yaml").write_bytes(b"sops: {}")
        with patch(EXEC, new=AsyncMock(side_effect=FileNotFoundError("sops"))):
            with pytest.raises(DecryptError):
                await FileSecretStore(tmp_path).load("default")

    @pytest.mark.asyncio
    async def test_bad_version(self, tmp_path: Path) -> None:
        (tmp_path / "default.yaml").write_bytes(b"version: 3\n")
        with pytest.raises(DecryptError, match="unsupported bundle version"):
            await FileSecretStore(tmp_path, allow_plaintext=True).load("default")
