"""
Tests for milestone progress derivation and the milestone endpoints.

Tests cover:
- Progress rounding and status derivation
- Recompute idempotence (second pass performs no writes)
- Listing with task counts, ordered by due date
- Updates cannot set derived fields; due date changes re-derive status
- Deletion detaches tasks instead of deleting them
- Deadlines sent with a UTC offset are stored as UTC
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.orm import Session

import lifecycle
import models
from models import MilestoneStatus, TaskStatus
from time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def add_tasks(db: Session, milestone: models.Milestone, statuses) -> None:
    for index, task_status in enumerate(statuses):
        db.add(models.Task(
            title=f"Task {index}",
            team_id=milestone.team_id,
            created_by=milestone.created_by,
            milestone_id=milestone.id,
            status=task_status,
        ))
    db.commit()


# ============== Derivation ==============


@pytest.mark.parametrize("total, completed, expected", [
    (0, 0, 0),
    (3, 1, 33),
    (3, 2, 67),
    (8, 1, 13),   # 12.5 rounds half up
    (200, 1, 1),  # 0.5 rounds half up
    (4, 4, 100),
])
def test_progress_rounding(total, completed, expected):
    progress, _ = lifecycle.derive_milestone_state(total, completed, None, NOW)

    assert progress == expected, f"{completed}/{total} should be {expected}%, got {progress}%"


def test_status_derivation():
    past = NOW - timedelta(days=1)
    future = NOW + timedelta(days=1)

    assert lifecycle.derive_milestone_state(0, 0, None, NOW)[1] == MilestoneStatus.not_started
    assert lifecycle.derive_milestone_state(2, 1, future, NOW)[1] == MilestoneStatus.in_progress
    assert lifecycle.derive_milestone_state(2, 1, past, NOW)[1] == MilestoneStatus.overdue
    assert lifecycle.derive_milestone_state(0, 0, past, NOW)[1] == MilestoneStatus.overdue
    # Completion wins over a passed due date
    assert lifecycle.derive_milestone_state(2, 2, past, NOW)[1] == MilestoneStatus.completed


def test_naive_due_date_treated_as_utc():
    naive_past = (NOW - timedelta(hours=1)).replace(tzinfo=None)

    assert lifecycle.derive_milestone_state(1, 0, naive_past, NOW)[1] == MilestoneStatus.overdue


# ============== Recompute ==============


def test_recompute_is_idempotent_and_skips_writes(test_db: Session, team: models.Team,
                                                  milestone: models.Milestone):
    add_tasks(test_db, milestone, [TaskStatus.done, TaskStatus.todo, TaskStatus.in_progress])

    first = lifecycle.refresh_team_milestones([team.id], test_db)
    assert first[0]["changed"] is True
    assert first[0]["milestone"].progress_percentage == 33
    assert first[0]["milestone"].status == MilestoneStatus.in_progress

    updates = []

    def record_update(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("UPDATE"):
            updates.append(statement)

    engine = test_db.get_bind()
    event.listen(engine, "before_cursor_execute", record_update)
    try:
        second = lifecycle.refresh_team_milestones([team.id], test_db)
    finally:
        event.remove(engine, "before_cursor_execute", record_update)

    assert second[0]["changed"] is False
    assert second[0]["milestone"].progress_percentage == 33
    assert second[0]["milestone"].status == MilestoneStatus.in_progress
    assert updates == [], f"Expected no writes on unchanged recompute, got {updates}"
    logger.info("✓ Recomputing unchanged milestones performs no writes")


def test_recompute_follows_task_changes(test_db: Session, team: models.Team, milestone: models.Milestone):
    add_tasks(test_db, milestone, [TaskStatus.todo, TaskStatus.todo])
    lifecycle.refresh_team_milestones([team.id], test_db)
    assert milestone.status == MilestoneStatus.not_started

    for task in test_db.query(models.Task).all():
        task.status = TaskStatus.done
    test_db.commit()

    result = lifecycle.refresh_team_milestones([team.id], test_db)[0]
    assert result["completed_tasks"] == 2
    assert result["milestone"].progress_percentage == 100
    assert result["milestone"].status == MilestoneStatus.completed


# ============== Endpoints ==============


def test_create_milestone(client: TestClient, team_with_bob: models.Team, bob: models.User,
                          bob_headers: dict):
    response = client.post(
        "/api/milestones",
        json={"title": "Beta", "team_id": team_with_bob.id, "priority": "High"},
        headers=bob_headers,
    )

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["status"] == "Not Started"
    assert data["progress_percentage"] == 0
    assert data["created_by_name"] == "bob"


def test_outsider_cannot_create_milestone(client: TestClient, team: models.Team, carol_headers: dict):
    response = client.post("/api/milestones", json={"title": "X", "team_id": team.id}, headers=carol_headers)

    assert response.status_code == 403
    assert response.json()["reason"] == "NotMember"


def test_list_team_milestones_with_stats(client: TestClient, test_db: Session, team: models.Team,
                                         alice: models.User, alice_headers: dict):
    later = models.Milestone(title="Later", team_id=team.id, created_by=alice.id,
                             due_date=utc_now() + timedelta(days=30))
    sooner = models.Milestone(title="Sooner", team_id=team.id, created_by=alice.id,
                              due_date=utc_now() + timedelta(days=3))
    undated = models.Milestone(title="Someday", team_id=team.id, created_by=alice.id)
    test_db.add_all([later, sooner, undated])
    test_db.commit()
    add_tasks(test_db, sooner, [TaskStatus.done, TaskStatus.todo])

    response = client.get(f"/api/milestones/team/{team.id}", headers=alice_headers)

    assert response.status_code == 200
    data = response.json()
    assert [m["title"] for m in data] == ["Sooner", "Later", "Someday"]
    assert data[0]["total_tasks"] == 2
    assert data[0]["completed_tasks"] == 1
    assert data[0]["progress_percentage"] == 50
    assert data[0]["status"] == "In Progress"
    assert data[0]["created_by_name"] == "alice"


def test_list_all_milestones_across_teams(client: TestClient, test_db: Session, team: models.Team,
                                          milestone: models.Milestone, carol: models.User,
                                          alice_headers: dict, carol_headers: dict):
    assert [m["title"] for m in client.get("/api/milestones", headers=alice_headers).json()] == ["v1.0"]
    assert client.get("/api/milestones", headers=carol_headers).json() == []


def test_update_cannot_set_derived_fields(client: TestClient, milestone: models.Milestone,
                                          alice_headers: dict):
    response = client.put(
        f"/api/milestones/{milestone.id}",
        json={"title": "v1.0 final", "status": "Completed", "progress_percentage": 100},
        headers=alice_headers,
    )

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    data = response.json()
    assert data["title"] == "v1.0 final"
    assert data["status"] == "Not Started"
    assert data["progress_percentage"] == 0


def test_update_past_due_date_marks_overdue(client: TestClient, milestone: models.Milestone,
                                            alice_headers: dict):
    past = (utc_now() - timedelta(days=2)).isoformat()

    response = client.put(f"/api/milestones/{milestone.id}", json={"due_date": past}, headers=alice_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "Overdue"


def test_delete_milestone_detaches_tasks(client: TestClient, test_db: Session, milestone: models.Milestone,
                                         alice_headers: dict):
    add_tasks(test_db, milestone, [TaskStatus.todo, TaskStatus.done])

    response = client.delete(f"/api/milestones/{milestone.id}", headers=alice_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["detached_tasks"] == 2
    test_db.expire_all()
    assert test_db.query(models.Milestone).count() == 0
    tasks = test_db.query(models.Task).all()
    assert len(tasks) == 2
    assert all(task.milestone_id is None for task in tasks)
    logger.info("✓ Milestone deletion keeps tasks and clears their milestone")


def test_milestone_tasks_listing(client: TestClient, test_db: Session, milestone: models.Milestone,
                                 alice_headers: dict, carol_headers: dict):
    add_tasks(test_db, milestone, [TaskStatus.todo])

    assert len(client.get(f"/api/milestones/{milestone.id}/tasks", headers=alice_headers).json()) == 1
    assert client.get(f"/api/milestones/{milestone.id}/tasks", headers=carol_headers).status_code == 403


def test_offset_due_date_stored_as_utc(client: TestClient, team: models.Team, alice_headers: dict):
    due = (utc_now() + timedelta(hours=3)).astimezone(timezone(timedelta(hours=-5)))

    created = client.post(
        "/api/milestones",
        json={"title": "Tonight", "team_id": team.id, "due_date": due.isoformat()},
        headers=alice_headers,
    )
    assert created.status_code == 201, f"Expected 201, got {created.status_code}: {created.json()}"

    listed = client.get(f"/api/milestones/team/{team.id}", headers=alice_headers).json()
    assert listed[0]["status"] == "Not Started", "A future deadline in another offset must not read as overdue"
    stored = as_utc(datetime.fromisoformat(listed[0]["due_date"]))
    assert stored == due.astimezone(timezone.utc)
    logger.info("✓ Offset deadlines are converted to UTC before storage")


def test_create_with_past_due_date_is_overdue(client: TestClient, team: models.Team, alice_headers: dict):
    past = (utc_now() - timedelta(days=1)).isoformat()

    response = client.post(
        "/api/milestones",
        json={"title": "Late", "team_id": team.id, "due_date": past},
        headers=alice_headers,
    )

    assert response.status_code == 201
    assert response.json()["status"] == "Overdue"


def test_listing_query_count_independent_of_milestone_count(client: TestClient, test_db: Session,
                                                              team: models.Team, alice: models.User,
                                                              bob: models.User, carol: models.User,
                                                              alice_headers: dict):
    def count_selects() -> int:
        selects = []

        def record(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("SELECT"):
                selects.append(statement)

        engine = test_db.get_bind()
        event.listen(engine, "before_cursor_execute", record)
        try:
            response = client.get(f"/api/milestones/team/{team.id}", headers=alice_headers)
        finally:
            event.remove(engine, "before_cursor_execute", record)
        assert response.status_code == 200
        return len(selects)

    test_db.add(models.Milestone(title="First", team_id=team.id, created_by=alice.id))
    test_db.commit()
    baseline = count_selects()

    test_db.add_all([
        models.Milestone(title="Second", team_id=team.id, created_by=bob.id),
        models.Milestone(title="Third", team_id=team.id, created_by=carol.id),
        models.Milestone(title="Fourth", team_id=team.id, created_by=alice.id),
    ])
    test_db.commit()

    assert count_selects() == baseline, "Listing should not issue a query per milestone"
