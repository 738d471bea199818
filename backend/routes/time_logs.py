"""
Time tracking endpoints: running timers and manual entries.

A user has at most one running timer across all tasks; starting a new one
stops the previous timer in the same transaction.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.orm import Session, joinedload

import lifecycle
import models
import schemas
from auth.dependencies import get_current_user
from auth.identity import Principal
from auth.permissions import Action, ResourceLocator, require
from database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["time-logs"])


@router.post("/api/tasks/{task_id}/time-logs/start", response_model=schemas.TimerStarted,
             status_code=status.HTTP_201_CREATED)
def start_timer(
    task_id: int,
    timer: Optional[schemas.TimerStart] = Body(None),
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Start a timer on a task.

    Returns the new running log plus any log that was stopped to make room.
    Starting a second timer on the same task is a 409.
    """
    task = require(principal, Action.log_time, ResourceLocator.task(task_id), db).resource
    description = timer.description if timer else None

    time_log, stopped = lifecycle.start_timer(principal, task, db, description=description)
    return {"time_log": time_log, "stopped": stopped}


@router.post("/api/time-logs/{time_log_id}/stop", response_model=schemas.TimeLog)
def stop_timer(
    time_log_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Stop a running timer (owner only)."""
    time_log = require(principal, Action.stop_time_log, ResourceLocator.time_log(time_log_id), db).resource
    return lifecycle.stop_timer(time_log, db)


@router.post("/api/tasks/{task_id}/time-logs", response_model=schemas.TimeLog,
             status_code=status.HTTP_201_CREATED)
def create_time_log(
    task_id: int,
    entry: schemas.TimeLogCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Record a finished time entry."""
    task = require(principal, Action.log_time, ResourceLocator.task(task_id), db).resource
    return lifecycle.log_time(
        principal, task, entry.start_time, entry.end_time, db, description=entry.description
    )


@router.get("/api/tasks/{task_id}/time-logs", response_model=schemas.TaskTimeLogs)
def list_time_logs(
    task_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List a task's time logs, newest first, with the total of finished minutes."""
    require(principal, Action.view_task, ResourceLocator.task(task_id), db)

    time_logs = (
        db.query(models.TimeLog)
        .options(joinedload(models.TimeLog.user))
        .filter(models.TimeLog.task_id == task_id)
        .order_by(models.TimeLog.start_time.desc(), models.TimeLog.id.desc())
        .all()
    )
    total_minutes = sum(log.duration_minutes or 0 for log in time_logs)

    logger.debug(f"Task {task_id} has {len(time_logs)} time log(s), {total_minutes} minute(s)")
    return {"time_logs": time_logs, "total_minutes": total_minutes}


@router.get("/api/time-logs/active", response_model=Optional[schemas.TimeLog])
def get_active_timer(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Return the current user's running timer, or null."""
    return (
        db.query(models.TimeLog)
        .filter(
            models.TimeLog.user_id == principal.id,
            models.TimeLog.is_active.is_(True)
        )
        .first()
    )


@router.delete("/api/time-logs/{time_log_id}")
def delete_time_log(
    time_log_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a time log (owner only)."""
    time_log = require(principal, Action.delete_time_log, ResourceLocator.time_log(time_log_id), db).resource

    with lifecycle.atomic(db):
        db.delete(time_log)

    logger.info(f"Time log {time_log_id} deleted by user {principal.id}")
    return {"message": "Time log deleted"}
