from pathlib import Path

import pytest

from agent_builder.errors import ConditionFailedError, NotFoundError, RecordExistsError
from agent_builder.state_store import (
    ARTIFACTS_TABLE,
    PROJECTS_TABLE,
    TASKS_TABLE,
    FileStateStore,
    InMemoryStateStore,
    StateStoreClient,
)


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> StateStoreClient:
    if request.param == "memory":
        return InMemoryStateStore()
    return FileStateStore(tmp_path / "state")


def _task(task_id: str, *, project_id: str = "p1", worker_name: str = "product_manager", status: str = "TODO") -> dict:
    return {"project_id": project_id, "task_id": task_id, "worker_name": worker_name, "status": status}


def test_put_and_get_round_trip(store: StateStoreClient) -> None:
    store.put(PROJECTS_TABLE, {"project_id": "p1", "owner_id": "o1", "status": "PENDING"})
    assert store.get(PROJECTS_TABLE, {"project_id": "p1"}) == {"project_id": "p1", "owner_id": "o1", "status": "PENDING"}
    assert store.get(PROJECTS_TABLE, {"project_id": "missing"}) is None


def test_put_if_absent_rejects_existing(store: StateStoreClient) -> None:
    store.put(ARTIFACTS_TABLE, {"project_id": "p1", "artifact_id": "a1", "location": "x"}, if_absent=True)
    with pytest.raises(RecordExistsError):
        store.put(ARTIFACTS_TABLE, {"project_id": "p1", "artifact_id": "a1", "location": "y"}, if_absent=True)
    assert store.get(ARTIFACTS_TABLE, {"project_id": "p1", "artifact_id": "a1"})["location"] == "x"


def test_put_batch_is_all_or_nothing(store: StateStoreClient) -> None:
    store.put(TASKS_TABLE, _task("t2"))
    with pytest.raises(RecordExistsError):
        store.put_batch(TASKS_TABLE, [_task("t1"), _task("t2"), _task("t3")])
    assert store.get(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"}) is None
    assert store.get(TASKS_TABLE, {"project_id": "p1", "task_id": "t3"}) is None

    with pytest.raises(RecordExistsError):
        store.put_batch(TASKS_TABLE, [_task("t4"), _task("t4")])
    assert store.get(TASKS_TABLE, {"project_id": "p1", "task_id": "t4"}) is None


def test_update_fields_applies_only_when_expected_matches(store: StateStoreClient) -> None:
    store.put(TASKS_TABLE, _task("t1"))
    updated = store.update_fields(
        TASKS_TABLE,
        {"project_id": "p1", "task_id": "t1"},
        {"status": "IN_PROGRESS", "progress": 0},
        expected={"status": "TODO"},
    )
    assert updated["status"] == "IN_PROGRESS"

    with pytest.raises(ConditionFailedError):
        store.update_fields(
            TASKS_TABLE,
            {"project_id": "p1", "task_id": "t1"},
            {"status": "IN_PROGRESS"},
            expected={"status": "TODO"},
        )
    assert store.get(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"})["progress"] == 0


def test_update_fields_missing_record_and_key_immutability(store: StateStoreClient) -> None:
    with pytest.raises(NotFoundError):
        store.update_fields(TASKS_TABLE, {"project_id": "p1", "task_id": "nope"}, {"status": "DONE"})

    store.put(TASKS_TABLE, _task("t1"))
    updated = store.update_fields(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"}, {"task_id": "t9", "status": "DONE"})
    assert updated["task_id"] == "t1"


def test_query_by_index_and_delete(store: StateStoreClient) -> None:
    store.put_batch(TASKS_TABLE, [_task("t1"), _task("t2", worker_name="backend_engineer"), _task("t3", project_id="p2")])
    assert {record["task_id"] for record in store.query_by_index(TASKS_TABLE, "project_id", "p1")} == {"t1", "t2"}
    assert [record["task_id"] for record in store.query_by_index(TASKS_TABLE, "worker_name", "backend_engineer")] == ["t2"]

    store.delete(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"})
    store.delete(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"})
    assert [record["task_id"] for record in store.query_by_index(TASKS_TABLE, "project_id", "p1")] == ["t2"]

    with pytest.raises(ValueError):
        store.query_by_index(TASKS_TABLE, "status", "TODO")


def test_records_require_key_attributes(store: StateStoreClient) -> None:
    with pytest.raises(ValueError):
        store.put(TASKS_TABLE, {"project_id": "p1"})
    with pytest.raises(ValueError):
        store.put("unknown", {"id": "x"})


def test_memory_store_returns_copies() -> None:
    store = InMemoryStateStore()
    store.put(PROJECTS_TABLE, {"project_id": "p1", "tags": ["a"]})
    record = store.get(PROJECTS_TABLE, {"project_id": "p1"})
    record["tags"].append("b")
    assert store.get(PROJECTS_TABLE, {"project_id": "p1"})["tags"] == ["a"]


def test_file_store_persists_across_instances(tmp_path: Path) -> None:
    root = tmp_path / "state"
    FileStateStore(root).put(TASKS_TABLE, _task("t1"))
    reopened = FileStateStore(root)
    assert reopened.get(TASKS_TABLE, {"project_id": "p1", "task_id": "t1"})["worker_name"] == "product_manager"
    assert (root / TASKS_TABLE / "p1" / "t1.json").is_file()


def test_file_store_rejects_unsafe_key_components(tmp_path: Path) -> None:
    store = FileStateStore(tmp_path / "state")
    with pytest.raises(ValueError):
        store.put(PROJECTS_TABLE, {"project_id": "../escape"})
    assert store.query_by_index(TASKS_TABLE, "project_id", "../escape") == []
