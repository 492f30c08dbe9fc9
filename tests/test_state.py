import json
from datetime import datetime, timedelta

import pytest

from pubdatahub.shutdown.state import (
    ApplicationInfo,
    ApplicationState,
    JobProgress,
    JobState,
    SessionState,
    StateError,
    StateManager,
)


@pytest.fixture
def manager(tmp_path):
    return StateManager(tmp_path, 3)


def sample_app_state():
    now = datetime.now()
    return ApplicationState(
        application=ApplicationInfo(
            version="1.0.0", shutdown_time=now, clean_shutdown=True, pid=12345
        ),
        jobs={
            "job1": JobState(
                id="job1",
                type="download",
                source="hackernews",
                status="paused",
                progress=JobProgress(
                    current=100, total=200, last_id="item123",
                    message="Downloading...", percentage=50.0,
                ),
                started_at=now - timedelta(hours=1),
                paused_at=now,
                metadata={"batch_size": 50},
            )
        },
        configuration={"storage_path": "/data", "worker_pool_size": 4, "max_retries": 3},
        session=SessionState(
            command_history=["help", "download hackernews", "jobs status"],
            active_queries=[],
            variables={"last_download": "hackernews"},
            working_dir="/app",
        ),
        timestamp=now,
    )


def test_creates_directories(tmp_path):
    StateManager(tmp_path, 3)
    assert (tmp_path / "state" / "backups").is_dir()


def test_save_load(manager):
    state = {"key1": "value1", "key2": 42.0, "key3": True, "nested": {"inner": "value"}}
    manager.save_state("test_component", state)
    assert manager.load_state("test_component") == state


def test_save_leaves_no_temp_file(manager, tmp_path):
    manager.save_state("comp", {"a": 1})
    assert manager.load_state("comp") == {"a": 1}
    assert manager.list_states() == ["comp"]
    names = sorted(p.name for p in (tmp_path / "state").iterdir() if p.is_file())
    assert names == ["comp.json"]


def test_list_states(manager):
    for comp in ["comp1", "comp2", "comp3"]:
        manager.save_state(comp, {"test": comp})
    assert manager.list_states() == ["comp1", "comp2", "comp3"]


def test_clear_state(manager):
    manager.save_state("test_clear", {"test": "data"})
    assert manager.list_states() == ["test_clear"]
    manager.clear_state("test_clear")
    assert manager.list_states() == []
    with pytest.raises(StateError, match="state file not found"):
        manager.load_state("test_clear")


def test_clear_missing_state_is_quiet(manager):
    manager.clear_state("never_saved")
    assert manager.list_states() == []


def test_load_invalid_json(manager, tmp_path):
    (tmp_path / "state" / "bad.json").write_text("{invalid json")
    with pytest.raises(StateError, match="failed to unmarshal state"):
        manager.load_state("bad")


def test_backup_restore(manager, tmp_path):
    manager.save_state("comp1", {"component": "data1"})
    manager.save_state("comp2", {"component": "data2"})
    name = manager.backup_state()
    manager.save_state("comp1", {"component": "modified"})
    manager.clear_state("comp2")

    entries = sorted(p.name for p in (tmp_path / "state" / "backups").iterdir())
    assert entries == [name]

    manager.restore_from_backup(name)
    assert manager.load_state("comp1") == {"component": "data1"}
    assert manager.load_state("comp2") == {"component": "data2"}


def test_restore_missing_backup(manager):
    with pytest.raises(StateError, match="backup not found: nope"):
        manager.restore_from_backup("nope")


def test_old_backups_removed(tmp_path):
    manager = StateManager(tmp_path, 2)
    backups = tmp_path / "state" / "backups"
    (backups / "20000101_000000").mkdir()
    (backups / "20000101_000001").mkdir()
    manager.save_state("comp", {"x": 1})
    name = manager.backup_state()
    remaining = sorted(p.name for p in backups.iterdir())
    assert remaining == ["20000101_000001", name]


def test_application_state(manager):
    state = sample_app_state()
    manager.save_application_state(state)
    loaded = manager.load_application_state()
    assert loaded.application.version == "1.0.0"
    assert loaded.application.clean_shutdown is True
    assert len(loaded.jobs) == 1
    job = loaded.jobs["job1"]
    assert (job.id, job.type, job.source) == ("job1", "download", "hackernews")
    assert loaded == state


def test_application_state_dict_round_trip():
    state = sample_app_state()
    assert ApplicationState.from_dict(state.to_dict()) == state


def test_paused_at_omitted_when_absent():
    state = ApplicationState(jobs={"j": JobState(id="j")})
    assert "paused_at" not in state.to_dict()["jobs"]["j"]


def test_from_dict_accepts_utc_suffix_and_nanoseconds():
    state = ApplicationState.from_dict({"timestamp": "2024-05-01T10:20:30.123456789Z"})
    assert state.timestamp.year == 2024
    assert state.timestamp.microsecond == 123456
    assert state.timestamp.utcoffset() == timedelta(0)


def test_written_file_uses_json_keys(manager, tmp_path):
    manager.save_application_state(sample_app_state())
    assert manager.list_states() == ["application"]
    assert manager.load_application_state().application.pid == 12345
    data = json.loads((tmp_path / "state" / "application.json").read_text())
    assert sorted(data) == ["application", "configuration", "jobs", "session", "timestamp"]
    assert data["application"]["pid"] == 12345


def test_validate_state(manager, tmp_path):
    manager.save_state("valid_component", {"valid": True})
    manager.validate_state("valid_component")
    (tmp_path / "state" / "invalid_component.json").write_text("{invalid json")
    with pytest.raises(StateError, match="invalid JSON"):
        manager.validate_state("invalid_component")


def test_get_state_info(manager):
    manager.save_state("info_test", {"test": "data for info"})
    info = manager.get_state_info("info_test")
    assert info.component == "info_test"
    assert info.size > 0
    assert info.is_valid is True
    assert info.modified_time.year >= 2000


def test_get_state_info_missing(manager):
    with pytest.raises(StateError, match="failed to stat"):
        manager.get_state_info("missing")