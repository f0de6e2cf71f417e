from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from latchkey_mcp.orchestration import StalenessSweep, TaskOutcome, is_stale
from latchkey_mcp.platforms import Platform, PlatformCatalog
from latchkey_mcp.registry import ProfileRecord, ProfileRegistry
from latchkey_mcp.remote import FakeBrowserUseClient, RemoteProfile

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_staleness_boundary_is_exclusive() -> None:
    threshold = timedelta(days=7)
    assert is_stale(NOW - timedelta(days=7.01), NOW, threshold)
    assert not is_stale(NOW - timedelta(days=6.99), NOW, threshold)
    assert not is_stale(NOW - threshold, NOW, threshold)


class RecordingRunner:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, record: ProfileRecord, platform: Platform) -> TaskOutcome:
        self.calls.append((record.profile_id, platform.refresh_task()))
        if record.profile_id in self.failing:
            return TaskOutcome(status="failure", task_id="task-x", error="Navigation failed")
        return TaskOutcome(status="success", task_id="task-x", output="ok")


def _sweep(tmp_path: Path, client: FakeBrowserUseClient, runner: RecordingRunner) -> tuple[StalenessSweep, ProfileRegistry]:
    registry = ProfileRegistry(tmp_path / "profiles.json", client, usage_path=tmp_path / "usage.json")
    sweep = StalenessSweep(
        registry,
        client,
        PlatformCatalog([]),
        runner,
        threshold=timedelta(days=7),
        clock=lambda: NOW,
    )
    return sweep, registry


def test_only_profiles_older_than_threshold_are_refreshed(tmp_path: Path) -> None:
    client = FakeBrowserUseClient()
    runner = RecordingRunner()
    sweep, registry = _sweep(tmp_path, client, runner)
    registry.save({"u1": {"linkedin": "prof-old", "gmail": "prof-fresh"}})
    registry.touch("u1", "linkedin", NOW - timedelta(days=7.01))
    registry.touch("u1", "gmail", NOW - timedelta(days=6.99))

    refreshed = asyncio.run(sweep.run())

    assert [item.profile_id for item in refreshed] == ["prof-old"]
    assert runner.calls == [("prof-old", "Navigate to https://linkedin.com to refresh the browser session")]
    record = {r.platform: r for r in registry.records()}["linkedin"]
    assert record.last_used_at == NOW
    assert refreshed[0].to_dict()["age_days"] == 7.01


def test_one_failure_does_not_stop_the_sweep(tmp_path: Path) -> None:
    client = FakeBrowserUseClient()
    runner = RecordingRunner(failing={"prof-a"})
    sweep, registry = _sweep(tmp_path, client, runner)
    registry.save({"u1": {"github": "prof-a"}, "u2": {"github": "prof-b"}})
    stale = NOW - timedelta(days=30)
    registry.touch("u1", "github", stale)
    registry.touch("u2", "github", stale)

    refreshed = asyncio.run(sweep.run())

    assert [item.profile_id for item in refreshed] == ["prof-b"]
    assert len(runner.calls) == 2
    assert sweep.failures == [
        {"user_id": "u1", "platform": "github", "profile_id": "prof-a", "error": "Navigation failed"}
    ]
    records = {r.profile_id: r for r in registry.records()}
    assert records["prof-a"].last_used_at == stale
    assert records["prof-b"].last_used_at == NOW


def test_profiles_without_local_usage_fall_back_to_remote_timestamps(tmp_path: Path) -> None:
    client = FakeBrowserUseClient(
        profiles=[
            RemoteProfile(id="prof-remote-old", updated_at=NOW - timedelta(days=10)),
            RemoteProfile(id="prof-remote-new", updated_at=NOW - timedelta(days=1)),
        ]
    )
    runner = RecordingRunner()
    sweep, registry = _sweep(tmp_path, client, runner)
    registry.save({"u1": {"amazon": "prof-remote-old", "github": "prof-remote-new", "gmail": "prof-missing"}})

    refreshed = asyncio.run(sweep.run())

    assert [item.profile_id for item in refreshed] == ["prof-remote-old"]
    assert [failure["profile_id"] for failure in sweep.failures] == ["prof-missing"]
