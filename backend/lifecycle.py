"""
Resource lifecycle rules.

Creation, cascade deletion and derived-state recomputation for teams,
invitations, milestones and time logs. Every read-then-write sequence here
runs inside ``atomic`` and uses conditional updates (or row locks where the
store supports them) so that concurrent requests on the same resource cannot
break the invariants:

- accepting/declining an invitation only succeeds while it is pending
- at most one active timer per user
- milestone progress/status are written only when they actually change
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

import models
from auth.identity import Principal
from errors import AppError, Conflict, InternalError, InvalidInput, NotFound
from time_utils import as_utc, is_past, utc_now, whole_minutes_between

logger = logging.getLogger(__name__)


@contextmanager
def atomic(db: Session, conflict_message: Optional[str] = None):
    """
    Run a block as one transaction: commit on success, roll back on error.

    Integrity violations become ``Conflict`` when ``conflict_message`` is given
    (unique memberships, pending invitations, the single-active-timer index);
    any other store failure becomes ``InternalError``.
    """
    try:
        yield
        db.commit()
    except AppError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        if conflict_message:
            logger.info(f"Integrity conflict: {conflict_message}")
            raise Conflict(conflict_message) from e
        logger.error(f"Unexpected integrity error: {e}")
        raise InternalError("Database integrity error") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise InternalError() from e


# ============== Teams & Membership ==============


def create_team(principal: Principal, name: str, db: Session) -> models.Team:
    """Create a team owned by the principal, who also gets a membership row."""
    with atomic(db):
        team = models.Team(name=name, created_by=principal.id)
        db.add(team)
        db.flush()  # Get team ID without committing
        db.add(models.Membership(team_id=team.id, user_id=principal.id))
    db.refresh(team)
    logger.info(f"Team created: {team.name} (ID: {team.id}) by user {principal.id}")
    return team


def add_member(team: models.Team, user_id: int, db: Session) -> models.Membership:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if user is None:
        raise NotFound("User not found")

    with atomic(db, "User is already a member of this team"):
        existing = (
            db.query(models.Membership)
            .filter(
                models.Membership.team_id == team.id,
                models.Membership.user_id == user_id
            )
            .first()
        )
        if existing:
            raise Conflict("User is already a member of this team")
        membership = models.Membership(team_id=team.id, user_id=user_id)
        db.add(membership)

    logger.info(f"User {user_id} added to team {team.id}")
    return membership


def remove_member(team: models.Team, user_id: int, db: Session) -> None:
    with atomic(db):
        deleted = (
            db.query(models.Membership)
            .filter(
                models.Membership.team_id == team.id,
                models.Membership.user_id == user_id
            )
            .delete(synchronize_session=False)
        )
        if deleted == 0:
            raise NotFound("Membership not found")
    logger.info(f"User {user_id} removed from team {team.id}")


def team_attachment_paths(team_id: int, db: Session) -> List[str]:
    rows = (
        db.query(models.Attachment.path)
        .join(models.Task, models.Attachment.task_id == models.Task.id)
        .filter(models.Task.team_id == team_id)
        .all()
    )
    return [row.path for row in rows]


def delete_team(team: models.Team, db: Session) -> List[str]:
    """
    Delete a team together with everything scoped to it.

    Memberships, invitations, messages, milestones and tasks (with their
    comments, attachments and time logs) go in the same transaction via ORM
    cascades, so no row is left referencing the missing team.

    Returns:
        Stored attachment paths; the caller removes the files after commit.
    """
    team_id = team.id
    paths = team_attachment_paths(team_id, db)
    with atomic(db):
        db.delete(team)
    logger.info(f"Team {team_id} deleted with {len(paths)} attachment(s)")
    return paths


# ============== Invitations ==============


def create_invitation(team: models.Team, principal: Principal, invitee_email: str, db: Session) -> models.Invitation:
    invitee = db.query(models.User).filter(models.User.email == invitee_email).first()
    if invitee is None:
        raise NotFound("User not found")

    membership = (
        db.query(models.Membership.id)
        .filter(
            models.Membership.team_id == team.id,
            models.Membership.user_id == invitee.id
        )
        .first()
    )
    if membership is not None:
        raise Conflict("User is already a member")

    with atomic(db, "Invitation already sent"):
        pending = (
            db.query(models.Invitation.id)
            .filter(
                models.Invitation.team_id == team.id,
                models.Invitation.invitee_id == invitee.id,
                models.Invitation.status == models.InvitationStatus.pending
            )
            .first()
        )
        if pending is not None:
            raise Conflict("Invitation already sent")
        invitation = models.Invitation(
            team_id=team.id,
            inviter_id=principal.id,
            invitee_id=invitee.id,
            status=models.InvitationStatus.pending,
        )
        db.add(invitation)

    db.refresh(invitation)
    # Email and real-time delivery are handled outside this service
    logger.info(
        f"Invitation {invitation.id} sent to user {invitee.id} for team {team.id} by user {principal.id}"
    )
    return invitation


def respond_to_invitation(principal: Principal, invitation_id: int, accept: bool, db: Session) -> models.Invitation:
    """
    Accept or decline a pending invitation addressed to the principal.

    The status flip is a conditional update on ``status = 'pending'``; accepting
    inserts the membership row in the same transaction.

    Raises:
        NotFound: no such invitation for this invitee
        Conflict: the invitation was already processed
    """
    invitation = (
        db.query(models.Invitation)
        .filter(
            models.Invitation.id == invitation_id,
            models.Invitation.invitee_id == principal.id
        )
        .first()
    )
    if invitation is None:
        raise NotFound("Invitation not found")

    new_status = models.InvitationStatus.accepted if accept else models.InvitationStatus.declined

    with atomic(db, "User is already a member of this team"):
        updated = (
            db.query(models.Invitation)
            .filter(
                models.Invitation.id == invitation.id,
                models.Invitation.status == models.InvitationStatus.pending
            )
            .update({"status": new_status}, synchronize_session=False)
        )
        if updated == 0:
            raise Conflict("Invitation already processed")

        if accept:
            existing = (
                db.query(models.Membership.id)
                .filter(
                    models.Membership.team_id == invitation.team_id,
                    models.Membership.user_id == principal.id
                )
                .first()
            )
            if existing is None:
                db.add(models.Membership(team_id=invitation.team_id, user_id=principal.id))

    db.refresh(invitation)
    logger.info(f"Invitation {invitation.id} {new_status.value} by user {principal.id}")
    return invitation


# ============== Milestones ==============


def derive_milestone_state(total: int, completed: int, due_date: Optional[datetime],
                           now: Optional[datetime] = None) -> Tuple[int, models.MilestoneStatus]:
    """
    Progress and status of a milestone from its task counts.

    progress = round(100 * completed / total), halves rounded up; 0 with no tasks.
    Status: 100% -> Completed; past due -> Overdue; >0% -> In Progress;
    otherwise Not Started.
    """
    progress = (200 * completed + total) // (2 * total) if total > 0 else 0

    if progress == 100:
        status = models.MilestoneStatus.completed
    elif is_past(due_date, now):
        status = models.MilestoneStatus.overdue
    elif progress > 0:
        status = models.MilestoneStatus.in_progress
    else:
        status = models.MilestoneStatus.not_started
    return progress, status


def milestone_task_counts(milestone_ids: Iterable[int], db: Session) -> dict:
    """Map milestone id -> (total tasks, done tasks)."""
    milestone_ids = list(milestone_ids)
    if not milestone_ids:
        return {}
    rows = (
        db.query(
            models.Task.milestone_id,
            func.count(models.Task.id),
            func.sum(case((models.Task.status == models.TaskStatus.done, 1), else_=0)),
        )
        .filter(models.Task.milestone_id.in_(milestone_ids))
        .group_by(models.Task.milestone_id)
        .all()
    )
    return {milestone_id: (int(total), int(done or 0)) for milestone_id, total, done in rows}


def recompute_milestones(milestones: List[models.Milestone], db: Session,
                         now: Optional[datetime] = None) -> List[dict]:
    """
    Recompute derived progress/status for ``milestones`` in place.

    Only attributes whose value changes are assigned, so an unchanged
    milestone produces no UPDATE. Does not commit.

    Returns:
        One dict per milestone with the milestone, total_tasks,
        completed_tasks and whether it changed.
    """
    counts = milestone_task_counts((m.id for m in milestones), db)
    results = []
    for milestone in milestones:
        total, completed = counts.get(milestone.id, (0, 0))
        progress, status = derive_milestone_state(total, completed, milestone.due_date, now)

        changed = False
        if milestone.progress_percentage != progress:
            milestone.progress_percentage = progress
            changed = True
        if milestone.status != status:
            milestone.status = status
            changed = True
        if changed:
            logger.debug(f"Milestone {milestone.id} recomputed: {progress}% {status.value}")

        results.append({
            "milestone": milestone,
            "total_tasks": total,
            "completed_tasks": completed,
            "changed": changed,
        })
    return results


def refresh_team_milestones(team_ids: List[int], db: Session, now: Optional[datetime] = None,
                            render: Optional[Callable[[dict], Any]] = None) -> list:
    """
    Load, lock and recompute all milestones of ``team_ids`` in one transaction.

    Ordered by due date (milestones without one last), then id. When
    ``render`` is given it is applied to each result before the commit
    expires the rows, and its output is returned instead.
    """
    if not team_ids:
        return []

    with atomic(db):
        milestones = (
            db.query(models.Milestone)
            .options(joinedload(models.Milestone.creator))
            .filter(models.Milestone.team_id.in_(team_ids))
            .order_by(models.Milestone.due_date.is_(None), models.Milestone.due_date, models.Milestone.id)
            .with_for_update(of=models.Milestone)
            .all()
        )
        results = recompute_milestones(milestones, db, now)
        if render:
            db.flush()
            rendered = [render(result) for result in results]
        else:
            rendered = results

    written = sum(1 for r in results if r["changed"])
    if written:
        logger.info(f"Recomputed {written} of {len(results)} milestone(s) for teams {team_ids}")
    return rendered


def delete_milestone(milestone: models.Milestone, db: Session) -> int:
    """
    Delete a milestone, detaching (not deleting) its tasks.

    Returns:
        Number of tasks detached
    """
    milestone_id = milestone.id
    with atomic(db):
        detached = (
            db.query(models.Task)
            .filter(models.Task.milestone_id == milestone_id)
            .update({"milestone_id": None}, synchronize_session=False)
        )
        db.delete(milestone)
    logger.info(f"Milestone {milestone_id} deleted, {detached} task(s) detached")
    return detached


# ============== Tasks ==============


def delete_task(task: models.Task, db: Session) -> List[str]:
    """
    Delete a task with its comments, attachments and time logs.

    The milestone is left alone and recomputed on its next listing.

    Returns:
        Stored attachment paths for the caller to remove after commit.
    """
    task_id = task.id
    paths = [attachment.path for attachment in task.attachments]
    with atomic(db):
        db.delete(task)
    logger.info(f"Task {task_id} deleted")
    return paths


# ============== Time Tracking ==============


def _close_log(log: models.TimeLog, now: datetime) -> None:
    log.end_time = now
    log.duration_minutes = whole_minutes_between(log.start_time, now)
    log.is_active = False


def start_timer(principal: Principal, task: models.Task, db: Session, description: Optional[str] = None,
                now: Optional[datetime] = None) -> Tuple[models.TimeLog, List[models.TimeLog]]:
    """
    Start a timer for (principal, task).

    Any timer the principal has running on another task is stopped first,
    in the same transaction.

    Returns:
        (the new active log, logs that were force-stopped)

    Raises:
        Conflict: a timer is already running for this exact task
    """
    now = now or utc_now()
    with atomic(db, "A timer is already running"):
        active_logs = (
            db.query(models.TimeLog)
            .filter(
                models.TimeLog.user_id == principal.id,
                models.TimeLog.is_active.is_(True)
            )
            .with_for_update()
            .all()
        )
        if any(log.task_id == task.id for log in active_logs):
            raise Conflict("Timer already running for this task")

        for log in active_logs:
            _close_log(log, now)
            logger.info(f"Force-stopped time log {log.id} (task {log.task_id}) for user {principal.id}")
        # Release the single-active-timer slot before inserting the new row
        db.flush()

        new_log = models.TimeLog(
            task_id=task.id,
            user_id=principal.id,
            start_time=now,
            description=description,
            is_active=True,
        )
        db.add(new_log)

    db.refresh(new_log)
    for log in active_logs:
        db.refresh(log)
    logger.info(f"Timer {new_log.id} started on task {task.id} by user {principal.id}")
    return new_log, active_logs


def stop_timer(log: models.TimeLog, db: Session, now: Optional[datetime] = None) -> models.TimeLog:
    """
    Stop a running timer, recording end time and whole-minute duration.

    Raises:
        Conflict: the timer is not running
    """
    now = now or utc_now()
    with atomic(db):
        updated = (
            db.query(models.TimeLog)
            .filter(
                models.TimeLog.id == log.id,
                models.TimeLog.is_active.is_(True)
            )
            .update(
                {
                    "is_active": False,
                    "end_time": now,
                    "duration_minutes": whole_minutes_between(log.start_time, now),
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            raise Conflict("Timer is not running")

    db.refresh(log)
    logger.info(f"Timer {log.id} stopped after {log.duration_minutes} minute(s)")
    return log


def log_time(principal: Principal, task: models.Task, start_time: datetime, end_time: datetime,
             db: Session, description: Optional[str] = None) -> models.TimeLog:
    """Record a finished time entry."""
    start_time, end_time = as_utc(start_time), as_utc(end_time)
    if end_time <= start_time:
        raise InvalidInput("end_time must be after start_time")

    with atomic(db):
        log = models.TimeLog(
            task_id=task.id,
            user_id=principal.id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=whole_minutes_between(start_time, end_time),
            description=description,
            is_active=False,
        )
        db.add(log)

    db.refresh(log)
    logger.info(f"Manual time log {log.id} ({log.duration_minutes} min) on task {task.id} by user {principal.id}")
    return log
