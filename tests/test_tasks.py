from datetime import date

import pytest

import farm
import tasks
from conftest import auth_headers, make_user


def _column(farm_id, status):
    board = tasks.board(farm_id)
    for column in board["columns"]:
        if column["status"] == status:
            return [t["title"] for t in column["tasks"]]
    raise AssertionError(status)


@pytest.fixture
def farm_id(owner):
    return farm.create_farm(owner, {"name": "Task Farm"})["id"]


def _make(farm_id, *titles, **fields):
    return [tasks.create_task(farm_id, {"title": title, **fields}) for title in titles]


def test_create_appends_to_column(farm_id):
    created = _make(farm_id, "a", "b", "c")
    assert [t["position"] for t in created] == [0, 1, 2]
    assert created[0]["status"] == "OPEN"
    assert created[0]["priority"] == "MEDIUM"


def test_create_validation(farm_id):
    with pytest.raises(tasks.TaskError, match="title is required"):
        tasks.create_task(farm_id, {})
    with pytest.raises(tasks.TaskError, match="status"):
        tasks.create_task(farm_id, {"title": "x", "status": "DONE"})
    with pytest.raises(tasks.TaskError, match="recurring_type is required"):
        tasks.create_task(farm_id, {"title": "x", "is_recurring": True})
    with pytest.raises(tasks.TaskError, match="ISO date"):
        tasks.create_task(farm_id, {"title": "x", "due_date": "next tuesday"})


def test_move_within_column(farm_id):
    a, b, c = _make(farm_id, "a", "b", "c")
    result = tasks.move_task(c["id"], "OPEN", 0)
    assert result["task"]["position"] == 0
    assert _column(farm_id, "OPEN") == ["c", "a", "b"]


def test_move_across_columns_clamps_index(farm_id):
    a, b, c = _make(farm_id, "a", "b", "c")
    (d,) = _make(farm_id, "d", status="IN_PROGRESS")
    tasks.move_task(a["id"], "IN_PROGRESS", 99)
    assert _column(farm_id, "IN_PROGRESS") == ["d", "a"]
    assert _column(farm_id, "OPEN") == ["b", "c"]
    tasks.move_task(b["id"], "in_progress", -5)
    assert _column(farm_id, "IN_PROGRESS") == ["b", "d", "a"]
    positions = [t["position"] for t in tasks.board(farm_id)["columns"][1]["tasks"]]
    assert positions == [0, 1, 2]
    remaining = tasks.board(farm_id)["columns"][0]["tasks"]
    assert [(t["title"], t["position"]) for t in remaining] == [("c", 0)]


def test_move_without_index_appends(farm_id):
    a, b = _make(farm_id, "a", "b")
    tasks.move_task(a["id"], "OPEN", None)
    assert _column(farm_id, "OPEN") == ["b", "a"]


def test_delete_compacts_positions(farm_id):
    a, b, c = _make(farm_id, "a", "b", "c")
    tasks.delete_task(b["id"])
    remaining = tasks.board(farm_id)["columns"][0]["tasks"]
    assert [(t["title"], t["position"]) for t in remaining] == [("a", 0), ("c", 1)]
    with pytest.raises(tasks.TaskError):
        tasks.delete_task(b["id"])


def test_closing_recurring_task_spawns_next(farm_id):
    (task,) = _make(farm_id, "Flush lines", is_recurring=True, recurring_type="weekly", due_date="2026-03-02")
    result = tasks.move_task(task["id"], "CLOSED", 0)
    spawned = result["next_occurrence"]
    assert spawned is not None
    assert spawned["status"] == "OPEN"
    assert spawned["due_date"] == "2026-03-09"
    assert spawned["recurring_type"] == "WEEKLY"
    again = tasks.move_task(task["id"], "CLOSED", 0)
    assert again["next_occurrence"] is None


def test_next_due_date():
    assert tasks.next_due_date("2026-03-02", "DAILY") == "2026-03-03"
    assert tasks.next_due_date("2027-01-31", "MONTHLY") == "2027-02-28"
    assert tasks.next_due_date("2028-01-31", "MONTHLY") == "2028-02-29"
    assert tasks.next_due_date("2026-12-15", "MONTHLY") == "2027-01-15"
    assert tasks.next_due_date(None, "WEEKLY", today=date(2026, 1, 1)) == "2026-01-08"


def test_overdue_and_summary(farm_id):
    today = date(2026, 5, 10)
    _make(farm_id, "late", due_date="2026-05-01")
    _make(farm_id, "today", due_date="2026-05-10")
    _make(farm_id, "done late", due_date="2026-05-01", status="CLOSED")
    assert tasks.count_overdue(farm_id, today) == 1
    summary = tasks.tasks_summary(farm_id, today)
    assert summary["total"] == 3
    assert summary["by_status"]["CLOSED"] == 1
    assert summary["overdue"] == 1
    assert summary["due_today"] == 1
    board = tasks.board(farm_id, today)
    late = [t for t in board["columns"][0]["tasks"] if t["title"] == "late"][0]
    assert late["is_overdue"] is True


def test_update_status_moves_to_end(farm_id):
    a, b = _make(farm_id, "a", "b")
    (c,) = _make(farm_id, "c", status="IN_REVIEW")
    updated = tasks.update_task(a["id"], {"status": "IN_REVIEW", "priority": "urgent"})
    assert updated["status"] == "IN_REVIEW"
    assert updated["priority"] == "URGENT"
    assert _column(farm_id, "IN_REVIEW") == ["c", "a"]
    assert _column(farm_id, "OPEN") == ["b"]


def test_update_with_unknown_status_changes_nothing(client, owner, farm_id):
    (task,) = _make(farm_id, "water beds")
    with pytest.raises(tasks.TaskError, match="status must be one of"):
        tasks.update_task(task["id"], {"title": "renamed", "status": "BOGUS"})
    assert tasks.get_task(task["id"])["title"] == "water beds"

    resp = client.patch(f"/api/tasks/{task['id']}", json={"title": "renamed", "status": "SHIPPED"},
                        headers=auth_headers(owner))
    assert resp.status_code == 400
    assert tasks.get_task(task["id"])["title"] == "water beds"
    assert _column(farm_id, "OPEN") == ["water beds"]


def test_board_endpoint_and_move(client, owner, farm_id):
    a, b = _make(farm_id, "a", "b")
    resp = client.get(f"/api/farms/{farm_id}/tasks", headers=auth_headers(owner))
    assert resp.status_code == 200
    columns = resp.get_json()["columns"]
    assert [c["status"] for c in columns] == ["OPEN", "IN_PROGRESS", "IN_REVIEW", "CLOSED"]

    resp = client.post(f"/api/tasks/{b['id']}/move", json={"status": "OPEN", "index": 0},
                       headers=auth_headers(owner))
    assert resp.status_code == 200
    assert _column(farm_id, "OPEN") == ["b", "a"]

    resp = client.post(f"/api/tasks/{b['id']}/move", json={"status": "SHIPPED"}, headers=auth_headers(owner))
    assert resp.status_code == 400


def test_viewer_cannot_create_task(client, owner, farm_id):
    viewer = make_user("VIEWER", "viewer@example.com")
    farm.grant_access(viewer["id"], farm_id)
    resp = client.post(f"/api/farms/{farm_id}/tasks", json={"title": "x"}, headers=auth_headers(viewer))
    assert resp.status_code == 403
    resp = client.get(f"/api/farms/{farm_id}/tasks", headers=auth_headers(viewer))
    assert resp.status_code == 200
