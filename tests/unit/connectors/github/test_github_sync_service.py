"""Tests for the sync service container entrypoint."""

import asyncio
import os
import signal
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeGitHub
from subagents.config import SyncConfig
from subagents.service import build_services

# Add scripts directory to path for importing the service module
sys.path.insert(0, str(Path(__file__).resolve().parents[4] / "scripts"))

import github_sync_service
from github_sync_service import run_service, write_health_file


@pytest.fixture
def health_file(tmp_path):
    path = tmp_path / "sync.health"
    with patch.object(github_sync_service, "HEALTH_FILE", path):
        yield path


@pytest.fixture
def wired():
    config = SyncConfig(throttle_request_delay=0, pushgateway_url="")
    fake = FakeGitHub()
    with (
        patch.object(github_sync_service, "get_config", return_value=config),
        patch.object(
            github_sync_service,
            "build_services",
            side_effect=lambda cfg: build_services(cfg, transport=fake.transport()),
        ),
    ):
        yield config


def test_write_health_file(health_file):
    write_health_file()
    assert int(health_file.read_text()) > 0


def test_write_health_file_unwritable(tmp_path):
    with patch.object(github_sync_service, "HEALTH_FILE", tmp_path / "missing" / "h"):
        write_health_file()


@pytest.mark.asyncio
async def test_config_error_exits_nonzero():
    with patch.object(github_sync_service, "get_config", side_effect=ValueError("bad")):
        assert await run_service() == 1


@pytest.mark.asyncio
async def test_runs_until_sigterm(wired, health_file, monkeypatch):
    monkeypatch.setenv("SUBAGENTS_SYNC_ON_START", "true")

    task = asyncio.create_task(run_service())
    for _ in range(200):
        if health_file.exists():
            break
        await asyncio.sleep(0.01)
    assert health_file.exists()

    os.kill(os.getpid(), signal.SIGTERM)

    assert await asyncio.wait_for(task, timeout=5) == 0


@pytest.mark.asyncio
async def test_sync_on_start_disabled(wired, health_file, monkeypatch):
    monkeypatch.setenv("SUBAGENTS_SYNC_ON_START", "false")

    task = asyncio.create_task(run_service())
    await asyncio.sleep(0.05)
    os.kill(os.getpid(), signal.SIGINT)

    assert await asyncio.wait_for(task, timeout=5) == 0
    assert not health_file.exists()
