"""Tests for the agentlabd entry point."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from agentlab import version_string
from agentlab.app.config import Settings
from agentlab.app.main import artifact_upload_url, build_controller, main, parse_args, run_daemon
from agentlab.core.clock import FixedClock
from agentlab.infra.sqlite import Store


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestArgs:
    def test_defaults(self) -> None:
        args = parse_args([])
        assert args.config == "/etc/agentlab/config.yaml"
        assert not args.version

    @pytest.mark.parametrize("flag", ["-version", "--version"])
    def test_version(self, flag: str, capsys: pytest.CaptureFixture) -> None:
        assert main([flag]) == 0
        assert capsys.readouterr().out.strip() == version_string()

    def test_invalid_config_exits_1(self, tmp_path: Path) -> None:
        assert main(["-config", str(tmp_path / "missing.yaml")]) == 1


class TestArtifactUploadUrl:
    def test_explicit(self) -> None:
        settings = Settings(artifact_upload_url="https://ctl.example/upload ")
        assert artifact_upload_url(settings) == "https://ctl.example/upload"

    def test_derived_from_listen(self) -> None:
        assert artifact_upload_url(Settings(artifact_listen="10.77.0.1:8846")) == "http://10.77.0.1:8846/upload"

    def test_ipv6_listen_bracketed(self) -> None:
        assert artifact_upload_url(Settings(artifact_listen="[fd00::1]:8846")) == "http://[fd00::1]:8846/upload"


class TestBuildController:
    @pytest.mark.asyncio
    async def test_wires_components(self, tmp_path: Path, store: Store, clock: FixedClock) -> None:
        settings = Settings(data_dir=str(tmp_path), profiles_dir=str(tmp_path / "profiles"))
        hypervisor = AsyncMock()
        controller = build_controller(settings, store, hypervisor=hypervisor, clock=clock)

        assert controller.store is store
        assert controller.hypervisor is hypervisor
        assert controller.lease_reconciler.INTERVAL == settings.coordinator.lease_interval
        assert controller.state_reconciler.INTERVAL == settings.coordinator.state_interval
        assert controller.artifact_gc.INTERVAL == settings.coordinator.gc_interval

        await controller.close()
        hypervisor.close.assert_awaited_once()


class TestRunDaemon:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, tmp_path: Path) -> None:
        settings = Settings(data_dir=str(tmp_path), profiles_dir=str(tmp_path / "profiles"))
        started = asyncio.Event()

        async def control_plane(coordinators) -> None:
            assert [c.name for c in coordinators] == ["LeaseReconciler", "StateReconciler", "ArtifactGC"]
            started.set()
            await asyncio.Event().wait()

        stop = asyncio.Event()
        with patch("agentlab.app.main.run_control_plane", new=control_plane):
            daemon = asyncio.create_task(run_daemon(settings, stop=stop))
            await asyncio.wait_for(started.wait(), timeout=5)
            stop.set()
            assert await asyncio.wait_for(daemon, timeout=5) == 0

        assert (tmp_path / "agentlab.db").exists()

    @pytest.mark.asyncio
    async def test_unopenable_database(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        settings = Settings(db_path=str(blocker / "sub" / "agentlab.db"))
        assert await run_daemon(settings) == 1

    @pytest.mark.asyncio
    async def test_invalid_profile_exits_1(self, tmp_path: Path) -> None:
        profiles = tmp_path / "profiles"
        profiles.mkdir()
        (profiles / "bad.yaml").write_text("name: bad\n")
        settings = Settings(data_dir=str(tmp_path), profiles_dir=str(profiles))
        assert await run_daemon(settings) == 1
