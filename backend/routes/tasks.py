"""
Task, comment and attachment endpoints.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from sqlalchemy.orm import Session, joinedload

import lifecycle
import models
import schemas
import storage
from auth.dependencies import get_current_user
from auth.identity import Principal
from auth.permissions import (
    Action,
    ResourceLocator,
    accessible_team_ids,
    check_assignee,
    check_milestone,
    require,
    require_valid,
)
from database import get_db
from errors import AppError, InvalidInput

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tasks"])

# Columns that may be cleared with an explicit null
NULLABLE_TASK_FIELDS = {"description", "due_date", "assigned_to_id", "milestone_id"}


# ============== Tasks ==============

@router.post("/api/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new task (requires member or creator access to the team)."""
    logger.info(f"User {principal.id} creating task: {task.title} in team {task.team_id}")

    team = require(principal, Action.create_task, ResourceLocator.team(task.team_id), db).team
    require_valid(check_assignee(principal, team, task.assigned_to_id, db))
    require_valid(check_milestone(team, task.milestone_id, db))

    db_task = models.Task(
        **task.model_dump(),
        created_by=principal.id,  # Always the authenticated user
        assigned_by_id=principal.id,
        status=models.TaskStatus.todo,
    )
    with lifecycle.atomic(db):
        db.add(db_task)
    db.refresh(db_task)

    logger.info(f"Task created: {db_task.title} (ID: {db_task.id}) by user {principal.id}")
    return db_task


@router.get("/api/tasks", response_model=List[schemas.Task])
def list_tasks(
    team_id: Optional[int] = None,
    assigned_to_id: Optional[int] = None,
    task_status: Optional[models.TaskStatus] = Query(None, alias="status"),
    milestone_id: Optional[int] = None,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List tasks in every team the current user belongs to or created."""
    logger.debug(
        f"User {principal.id} listing tasks: team_id={team_id}, assigned_to_id={assigned_to_id}, "
        f"status={task_status}, milestone_id={milestone_id}"
    )

    if team_id is not None:
        require(principal, Action.view_team, ResourceLocator.team(team_id), db)
        team_ids = [team_id]
    else:
        team_ids = accessible_team_ids(principal.id, db)

    query = (
        db.query(models.Task)
        .options(
            joinedload(models.Task.creator),
            joinedload(models.Task.assignee)
        )
        .filter(models.Task.team_id.in_(team_ids))
    )
    if assigned_to_id is not None:
        query = query.filter(models.Task.assigned_to_id == assigned_to_id)
    if task_status is not None:
        query = query.filter(models.Task.status == task_status)
    if milestone_id is not None:
        query = query.filter(models.Task.milestone_id == milestone_id)

    tasks = query.order_by(models.Task.created_at.desc(), models.Task.id.desc()).all()

    logger.info(f"User {principal.id} retrieved {len(tasks)} tasks")
    return tasks


@router.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return require(principal, Action.view_task, ResourceLocator.task(task_id), db).resource


@router.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update a task.

    The owning team never changes. A new assignee or milestone is validated
    against that team, and reassignment records the current user as assigner.
    """
    logger.debug(f"User {principal.id} updating task {task_id}")

    decision = require(principal, Action.update_task, ResourceLocator.task(task_id), db)
    task, team = decision.resource, decision.team

    update_data = task_update.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        if value is None and key not in NULLABLE_TASK_FIELDS:
            raise InvalidInput(f"{key} cannot be null")

    if "assigned_to_id" in update_data:
        require_valid(check_assignee(principal, team, update_data["assigned_to_id"], db))
        update_data["assigned_by_id"] = principal.id
    if "milestone_id" in update_data:
        require_valid(check_milestone(team, update_data["milestone_id"], db))

    with lifecycle.atomic(db):
        for key, value in update_data.items():
            setattr(task, key, value)
    db.refresh(task)

    logger.info(f"Task {task_id} updated by user {principal.id}: {sorted(update_data)}")
    return task


@router.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a task with its comments, attachments and time logs."""
    task = require(principal, Action.delete_task, ResourceLocator.task(task_id), db).resource
    attachment_paths = lifecycle.delete_task(task, db)
    storage.remove_files(attachment_paths)
    return {"message": "Task deleted"}


# ============== Comments ==============

@router.get("/api/tasks/{task_id}/comments", response_model=List[schemas.Comment])
def list_comments(
    task_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require(principal, Action.view_task, ResourceLocator.task(task_id), db)
    return (
        db.query(models.Comment)
        .options(joinedload(models.Comment.author))
        .filter(models.Comment.task_id == task_id)
        .order_by(models.Comment.created_at, models.Comment.id)
        .all()
    )


@router.post("/api/tasks/{task_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a comment to a task."""
    require(principal, Action.comment_on_task, ResourceLocator.task(task_id), db)

    # SECURITY: the author is always the authenticated user
    db_comment = models.Comment(task_id=task_id, author_id=principal.id, content=comment.content)
    with lifecycle.atomic(db):
        db.add(db_comment)
    db.refresh(db_comment)

    logger.info(f"Comment {db_comment.id} added to task {task_id} by user {principal.id}")
    return db_comment


@router.put("/api/comments/{comment_id}", response_model=schemas.Comment)
def update_comment(
    comment_id: int,
    comment_update: schemas.CommentUpdate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit a comment (author only)."""
    comment = require(principal, Action.update_comment, ResourceLocator.comment(comment_id), db).resource

    with lifecycle.atomic(db):
        comment.content = comment_update.content
    db.refresh(comment)

    logger.info(f"Comment {comment_id} updated by user {principal.id}")
    return comment


@router.delete("/api/comments/{comment_id}")
def delete_comment(
    comment_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a comment (author only; team membership does not substitute)."""
    comment = require(principal, Action.delete_comment, ResourceLocator.comment(comment_id), db).resource

    with lifecycle.atomic(db):
        db.delete(comment)

    logger.info(f"Comment {comment_id} deleted by user {principal.id}")
    return {"message": "Comment deleted"}


# ============== Attachments ==============

@router.get("/api/tasks/{task_id}/attachments", response_model=List[schemas.Attachment])
def list_attachments(
    task_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    require(principal, Action.view_task, ResourceLocator.task(task_id), db)
    return (
        db.query(models.Attachment)
        .options(joinedload(models.Attachment.uploader))
        .filter(models.Attachment.task_id == task_id)
        .order_by(models.Attachment.created_at.desc(), models.Attachment.id.desc())
        .all()
    )


@router.post("/api/tasks/{task_id}/attachments", response_model=schemas.Attachment,
             status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    task_id: int,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Upload a file attachment to a task."""
    logger.debug(f"Uploading attachment to task {task_id}: {file.filename}")

    require(principal, Action.attach_to_task, ResourceLocator.task(task_id), db)
    storage.validate_upload(file)

    filename, public_path, file_size = await storage.save_upload(f"tasks/{task_id}", file)

    attachment = models.Attachment(
        task_id=task_id,
        filename=filename,
        original_name=file.filename,
        path=public_path,
        mimetype=file.content_type,
        size=file_size,
        uploaded_by=principal.id  # SECURITY: Always use authenticated user
    )
    try:
        with lifecycle.atomic(db):
            db.add(attachment)
    except AppError:
        # Clean up saved file
        storage.remove_file(public_path)
        logger.error(f"Cleaned up orphaned file after DB error: {public_path}")
        raise
    db.refresh(attachment)

    logger.info(f"Attachment {attachment.id} uploaded to task {task_id} by user {principal.id}")
    return attachment


@router.delete("/api/attachments/{attachment_id}")
def delete_attachment(
    attachment_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete an attachment (uploader, or the team creator)."""
    attachment = require(
        principal, Action.delete_attachment, ResourceLocator.attachment(attachment_id), db
    ).resource
    public_path = attachment.path

    with lifecycle.atomic(db):
        db.delete(attachment)
    storage.remove_file(public_path)

    logger.info(f"Attachment {attachment_id} deleted by user {principal.id}")
    return {"message": "Attachment deleted"}
