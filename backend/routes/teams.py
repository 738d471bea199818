"""
Team, membership, invitation and team chat endpoints.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import or_
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
    require,
    resolve_resource,
)
from database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teams", tags=["teams"])

MESSAGE_HISTORY_LIMIT = 100


# ============== Teams ==============

@router.post("", response_model=schemas.Team, status_code=status.HTTP_201_CREATED)
def create_team(
    team: schemas.TeamCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new team; the creator also gets a membership row."""
    logger.debug(f"User {principal.id} creating team: {team.name}")
    return lifecycle.create_team(principal, team.name, db)


@router.get("", response_model=List[schemas.TeamWithCreator])
def list_teams(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List all teams the current user is a member or the creator of."""
    logger.debug(f"User {principal.id} listing teams")

    team_ids = accessible_team_ids(principal.id, db)
    teams = (
        db.query(models.Team)
        .filter(models.Team.id.in_(team_ids))
        .options(joinedload(models.Team.creator))
        .order_by(models.Team.created_at.desc(), models.Team.id.desc())
        .all()
    )

    logger.info(f"User {principal.id} retrieved {len(teams)} teams")
    return teams


# ============== Invitations ==============
# Declared before /{team_id} routes so "invitations" is never parsed as a team id

@router.get("/invitations", response_model=List[schemas.PendingInvitation])
def list_invitations(
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List pending invitations addressed to the current user."""
    invitations = (
        db.query(models.Invitation)
        .options(
            joinedload(models.Invitation.team),
            joinedload(models.Invitation.inviter)
        )
        .filter(
            models.Invitation.invitee_id == principal.id,
            models.Invitation.status == models.InvitationStatus.pending
        )
        .order_by(models.Invitation.created_at.desc(), models.Invitation.id.desc())
        .all()
    )

    logger.info(f"User {principal.id} has {len(invitations)} pending invitation(s)")
    return [
        {
            "id": invitation.id,
            "team_id": invitation.team_id,
            "inviter_id": invitation.inviter_id,
            "invitee_id": invitation.invitee_id,
            "status": invitation.status,
            "created_at": invitation.created_at,
            "team_name": invitation.team.name,
            "inviter_name": invitation.inviter.username,
        }
        for invitation in invitations
    ]


@router.post("/invitations/{invitation_id}/accept", response_model=schemas.Invitation)
def accept_invitation(
    invitation_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Accept a pending invitation and join the team."""
    return lifecycle.respond_to_invitation(principal, invitation_id, True, db)


@router.post("/invitations/{invitation_id}/decline", response_model=schemas.Invitation)
def decline_invitation(
    invitation_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Decline a pending invitation."""
    return lifecycle.respond_to_invitation(principal, invitation_id, False, db)


# ============== Team Messages ==============

@router.delete("/messages/{message_id}")
def delete_message(
    message_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a chat message (author, or the team creator)."""
    message = require(principal, Action.delete_message, ResourceLocator.message(message_id), db).resource

    with lifecycle.atomic(db):
        db.delete(message)

    logger.info(f"Message {message_id} deleted by user {principal.id}")
    return {"message": "Message deleted"}


# ============== Single Team ==============

@router.get("/{team_id}", response_model=schemas.TeamWithCreator)
def get_team(
    team_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get team details (requires member or creator access)."""
    logger.debug(f"User {principal.id} requesting team {team_id}")
    return require(principal, Action.view_team, ResourceLocator.team(team_id), db).team


@router.delete("/{team_id}")
def delete_team(
    team_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Delete a team and everything scoped to it (creator only)."""
    logger.debug(f"User {principal.id} deleting team {team_id}")

    team = require(principal, Action.delete_team, ResourceLocator.team(team_id), db).team
    attachment_paths = lifecycle.delete_team(team, db)

    # Rows are committed; now drop the files they pointed to
    storage.remove_files(attachment_paths)

    return {"message": "Team deleted"}


# ============== Members ==============

@router.get("/{team_id}/members", response_model=List[schemas.UserPublic])
def list_team_members(
    team_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List team members, including the creator even without a membership row."""
    team = require(principal, Action.view_team, ResourceLocator.team(team_id), db).team

    member_ids = (
        db.query(models.Membership.user_id)
        .filter(models.Membership.team_id == team.id)
    )
    members = (
        db.query(models.User)
        .filter(
            or_(
                models.User.id.in_(member_ids),
                models.User.id == team.created_by
            )
        )
        .order_by(models.User.username)
        .all()
    )

    logger.debug(f"Team {team_id} has {len(members)} member(s)")
    return members


@router.post("/{team_id}/members", response_model=schemas.UserPublic, status_code=status.HTTP_201_CREATED)
def add_team_member(
    team_id: int,
    member: schemas.MemberAdd,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a user to the team (creator only)."""
    logger.debug(f"User {principal.id} adding user {member.user_id} to team {team_id}")

    team = require(principal, Action.add_member, ResourceLocator.team(team_id), db).team
    membership = lifecycle.add_member(team, member.user_id, db)
    return membership.user


@router.delete("/{team_id}/members/{user_id}")
def remove_team_member(
    team_id: int,
    user_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Remove a member from a team.

    Any member may remove themselves (leave). Removing someone else,
    including the creator's own row, requires being the team creator.
    """
    logger.debug(f"User {principal.id} removing member {user_id} from team {team_id}")

    if user_id == principal.id:
        _, team = resolve_resource(ResourceLocator.team(team_id), db)
    else:
        team = require(principal, Action.remove_member, ResourceLocator.team(team_id), db).team

    lifecycle.remove_member(team, user_id, db)

    if user_id == principal.id:
        return {"message": "Left team"}
    return {"message": "Team member removed"}


@router.post("/{team_id}/invite", response_model=schemas.Invitation, status_code=status.HTTP_201_CREATED)
def invite_member(
    team_id: int,
    invite: schemas.InviteRequest,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Invite a registered user by email (creator only)."""
    team = require(principal, Action.invite_member, ResourceLocator.team(team_id), db).team
    return lifecycle.create_invitation(team, principal, invite.email, db)


# ============== Team Chat ==============

@router.get("/{team_id}/messages", response_model=List[schemas.Message])
def list_messages(
    team_id: int,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Return the most recent messages, oldest first."""
    require(principal, Action.view_team, ResourceLocator.team(team_id), db)

    recent = (
        db.query(models.TeamMessage)
        .options(joinedload(models.TeamMessage.author))
        .filter(models.TeamMessage.team_id == team_id)
        .order_by(models.TeamMessage.created_at.desc(), models.TeamMessage.id.desc())
        .limit(MESSAGE_HISTORY_LIMIT)
        .all()
    )
    return list(reversed(recent))


@router.post("/{team_id}/messages", response_model=schemas.Message, status_code=status.HTTP_201_CREATED)
def post_message(
    team_id: int,
    message: schemas.MessageCreate,
    principal: Principal = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Post a chat message to the team."""
    require(principal, Action.post_message, ResourceLocator.team(team_id), db)

    db_message = models.TeamMessage(
        team_id=team_id,
        user_id=principal.id,  # Always the authenticated user
        message=message.message,
        message_type=message.message_type,
        message_metadata=message.metadata,
    )
    with lifecycle.atomic(db):
        db.add(db_message)
    db.refresh(db_message)

    logger.info(f"Message {db_message.id} posted to team {team_id} by user {principal.id}")
    return db_message
