"""Tests for the file-backed project store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from forest.orchestrator.exceptions import NoActiveProjectError
from forest.orchestrator.snapshot import StateSnapshotGatherer
from forest.persistence import ActiveProjectRegistry, JsonDataPersistence


class TestJsonDataPersistence:
    def test_missing_key_returns_none(self, tmp_path: Path) -> None:
        store = JsonDataPersistence(tmp_path)
        assert store.load_project_data("proj-1", "hta.json") is None

    def test_save_and_load(self, tmp_path: Path) -> None:
        store = JsonDataPersistence(tmp_path)

        store.save_project_data("proj-1", "config.json", {"goal": "learn rust"})

        assert store.load_project_data("proj-1", "config.json") == {"goal": "learn rust"}
        assert (tmp_path / "projects" / "proj-1" / "config.json").exists()
        assert not (tmp_path / "projects" / "proj-1" / "config.json.tmp").exists()

    def test_save_overwrites(self, tmp_path: Path) -> None:
        store = JsonDataPersistence(tmp_path)
        store.save_project_data("proj-1", "hta.json", {"v": 1})
        store.save_project_data("proj-1", "hta.json", {"v": 2})

        assert store.load_project_data("proj-1", "hta.json") == {"v": 2}

    def test_corrupt_document_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "projects" / "proj-1" / "hta.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(json.JSONDecodeError):
            JsonDataPersistence(tmp_path).load_project_data("proj-1", "hta.json")

    @pytest.mark.parametrize("project_id", ["", "..", "a/b"])
    def test_rejects_path_like_project_ids(self, tmp_path: Path, project_id: str) -> None:
        with pytest.raises(ValueError):
            JsonDataPersistence(tmp_path).load_project_data(project_id, "hta.json")

    def test_log_error_appends_json_lines(self, tmp_path: Path) -> None:
        store = JsonDataPersistence(tmp_path)

        store.log_error("SystemClock.perform_risk_detection", RuntimeError("offline"), {"job": "risk_detection"})
        store.log_error("SystemClock.perform_archiving", ValueError("bad"))

        lines = store.error_log_path.read_text().splitlines()
        records = [json.loads(line) for line in lines]
        assert [record["context"] for record in records] == [
            "SystemClock.perform_risk_detection",
            "SystemClock.perform_archiving",
        ]
        assert records[0]["errorType"] == "RuntimeError"
        assert records[0]["message"] == "offline"
        assert records[0]["meta"] == {"job": "risk_detection"}
        assert records[1]["meta"] == {}


class TestActiveProjectRegistry:
    def test_no_active_project(self, tmp_path: Path) -> None:
        registry = ActiveProjectRegistry(tmp_path)

        assert registry.get_active_project() is None
        with pytest.raises(NoActiveProjectError):
            registry.require_active_project()

    def test_set_active_project_preserves_other_keys(self, tmp_path: Path) -> None:
        (tmp_path / "config.json").write_text(json.dumps({"theme": "dark"}))
        registry = ActiveProjectRegistry(tmp_path)

        registry.set_active_project("proj-9")

        assert registry.require_active_project() == "proj-9"
        assert json.loads((tmp_path / "config.json").read_text()) == {
            "theme": "dark",
            "activeProject": "proj-9",
        }


@pytest.mark.asyncio()
async def test_gatherer_reads_from_disk(tmp_path: Path) -> None:
    store = JsonDataPersistence(tmp_path)
    store.save_project_data("proj-1", "config.json", {"goal": "learn rust"})
    store.save_project_data("proj-1", "learning_history.json", {"completedTopics": [{"difficulty": 5}]})
    (tmp_path / "projects" / "proj-1" / "hta.json").write_text("{broken")

    snapshot = await StateSnapshotGatherer(store).gather("proj-1")

    assert snapshot.config == {"goal": "learn rust"}
    assert snapshot.metrics.average_difficulty == 5
    assert "hta.json" in snapshot.error
