"""
Milestone endpoints.

Progress and status are derived from the milestone's tasks and recomputed on
every listing; callers can never set them directly.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session, joinedload

import lifecycle
import models
import schemas
from auth.dependencies import get_current_user
from auth.identity import Principal
from auth.permissions import Action, ResourceLocator, accessible_team_ids, require
from database import get_db
from errors import InvalidInput

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/milestones", tags=["milestones"])


def _with_stats(result: dict) -> dict:
    milestone = result["milestone"]
    data = schemas.Milestone.model_validate(milestone).model_dump()
    data["total_tasks"] = result["total_tasks"]
    data["completed_tasks"] = result["completed_tasks"]
    data["created_by_name"] = milestone.creator.username if milestone.creator else None
    return data


@router.post("", response_model=schemas.MilestoneWithStats, status_code=status.HTTP_201_CREATED)
def create_milestone(
    milestone: schemas.MilestoneCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a milestone; a due date already in the past makes it Overdue at once."""
    require(principal, Action.create_milestone, ResourceLocator.team(milestone.team_id), db)

    db_milestone = models.Milestone(
        **milestone.model_dump(),
        created_by=principal.id,
        status=models.MilestoneStatus.not_started,
        progress_percentage=0,
    )
    with lifecycle.atomic(db):
        db.add(db_milestone)
        db.flush()
        result = lifecycle.recompute_milestones([db_milestone], db)[0]
    db.refresh(db_milestone)

    logger.info(
        f"Milestone created: {db_milestone.title} (ID: {db_milestone.id}) by user {principal.id}, "
        f"status {db_milestone.status.value}"
    )
    return _with_stats(result)


@router.get("", response_model=List[schemas.MilestoneWithStats])
def list_milestones(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List milestones across every team the current user belongs to or created."""
    team_ids = accessible_team_ids(principal.id, db)
    milestones = lifecycle.refresh_team_milestones(team_ids, db, render=_with_stats)

    logger.info(f"User {principal.id} retrieved {len(milestones)} milestones")
    return milestones


@router.get("/team/{team_id}", response_model=List[schemas.MilestoneWithStats])
def list_team_milestones(
    team_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List a team's milestones ordered by due date, recomputing progress first."""
    require(principal, Action.view_team, ResourceLocator.team(team_id), db)
    milestones = lifecycle.refresh_team_milestones([team_id], db, render=_with_stats)

    logger.info(f"User {principal.id} retrieved {len(milestones)} milestones for team {team_id}")
    return milestones


@router.get("/{milestone_id}/tasks", response_model=List[schemas.Task])
def list_milestone_tasks(
    milestone_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require(principal, Action.view_milestone, ResourceLocator.milestone(milestone_id), db)
    return (
        db.query(models.Task)
        .options(
            joinedload(models.Task.creator),
            joinedload(models.Task.assignee)
        )
        .filter(models.Task.milestone_id == milestone_id)
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
        .all()
    )


@router.put("/{milestone_id}", response_model=schemas.MilestoneWithStats)
def update_milestone(
    milestone_id: int,
    milestone_update: schemas.MilestoneUpdate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update a milestone's title, description, due date or priority.

    A due date change can flip the derived status, so progress and status
    are recomputed in the same transaction.
    """
    milestone = require(
        principal, Action.update_milestone, ResourceLocator.milestone(milestone_id), db
    ).resource

    update_data = milestone_update.model_dump(exclude_unset=True)
    for key in ("title", "priority"):
        if key in update_data and update_data[key] is None:
            raise InvalidInput(f"{key} cannot be null")

    with lifecycle.atomic(db):
        for key, value in update_data.items():
            setattr(milestone, key, value)
        db.flush()
        result = lifecycle.recompute_milestones([milestone], db)[0]
    db.refresh(milestone)

    logger.info(f"Milestone {milestone_id} updated by user {principal.id}: {sorted(update_data)}")
    return _with_stats(result)


@router.delete("/{milestone_id}")
def delete_milestone(
    milestone_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a milestone; its tasks are kept and detached."""
    milestone = require(
        principal, Action.delete_milestone, ResourceLocator.milestone(milestone_id), db
    ).resource
    detached = lifecycle.delete_milestone(milestone, db)
    return {"message": "Milestone deleted", "detached_tasks": detached}
