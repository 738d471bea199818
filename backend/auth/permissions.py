"""
Team-scoped authorization engine.

Every mutating (and most reading) route funnels through ``authorize`` /
``require``. A decision is derived from the current database snapshot on every
call; nothing is cached between requests, so a membership revoked mid-session
takes effect on the very next call.

Standing within a team comes from two independent predicates:

- ``is_member``: an explicit row in ``memberships``
- ``is_creator``: ``teams.created_by`` equals the principal

They are OR'd at every team-access check site. The creator keeps elevated
rights even without a membership row.

Resource-level rights ("direct access") are checked before team access:
task creators and assignees, milestone creators, and comment/time-log
authors may act on their own resources regardless of membership.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
from auth.identity import Principal
from errors import NotFound, PermissionDenied

logger = logging.getLogger(__name__)


class DenyReason(str, enum.Enum):
    not_member = "NotMember"
    not_creator = "NotCreator"
    not_author = "NotAuthor"
    invalid_assignee = "InvalidAssignee"
    invalid_milestone = "InvalidMilestone"


class ResourceKind(str, enum.Enum):
    team = "team"
    task = "task"
    milestone = "milestone"
    comment = "comment"
    attachment = "attachment"
    time_log = "time_log"
    message = "message"


class Action(str, enum.Enum):
    # Team-scoped: member or creator
    view_team = "view_team"
    create_task = "create_task"
    create_milestone = "create_milestone"
    post_message = "post_message"

    # Team mutation: creator only
    delete_team = "delete_team"
    add_member = "add_member"
    invite_member = "invite_member"
    remove_member = "remove_member"

    # Existing resource: direct access, then member or creator
    view_task = "view_task"
    update_task = "update_task"
    delete_task = "delete_task"
    comment_on_task = "comment_on_task"
    attach_to_task = "attach_to_task"
    log_time = "log_time"
    view_milestone = "view_milestone"
    update_milestone = "update_milestone"
    delete_milestone = "delete_milestone"

    # Self-scoped: author only
    update_comment = "update_comment"
    delete_comment = "delete_comment"
    stop_time_log = "stop_time_log"
    delete_time_log = "delete_time_log"

    # Author, or the team creator
    delete_attachment = "delete_attachment"
    delete_message = "delete_message"


class Rule(enum.Enum):
    team_access = "team_access"
    creator_only = "creator_only"
    author_only = "author_only"
    author_or_creator = "author_or_creator"


@dataclass(frozen=True)
class Policy:
    kind: ResourceKind
    rule: Rule
    # Resource attributes holding user ids that grant direct access
    direct: Tuple[str, ...] = ()


_TASK_PARTICIPANTS = ("created_by", "assigned_to_id")

POLICIES = {
    Action.view_team: Policy(ResourceKind.team, Rule.team_access),
    Action.create_task: Policy(ResourceKind.team, Rule.team_access),
    Action.create_milestone: Policy(ResourceKind.team, Rule.team_access),
    Action.post_message: Policy(ResourceKind.team, Rule.team_access),

    Action.delete_team: Policy(ResourceKind.team, Rule.creator_only),
    Action.add_member: Policy(ResourceKind.team, Rule.creator_only),
    Action.invite_member: Policy(ResourceKind.team, Rule.creator_only),
    Action.remove_member: Policy(ResourceKind.team, Rule.creator_only),

    Action.view_task: Policy(ResourceKind.task, Rule.team_access, _TASK_PARTICIPANTS),
    Action.update_task: Policy(ResourceKind.task, Rule.team_access, _TASK_PARTICIPANTS),
    Action.delete_task: Policy(ResourceKind.task, Rule.team_access, ("created_by",)),
    Action.comment_on_task: Policy(ResourceKind.task, Rule.team_access, _TASK_PARTICIPANTS),
    Action.attach_to_task: Policy(ResourceKind.task, Rule.team_access, _TASK_PARTICIPANTS),
    Action.log_time: Policy(ResourceKind.task, Rule.team_access, _TASK_PARTICIPANTS),
    Action.view_milestone: Policy(ResourceKind.milestone, Rule.team_access, ("created_by",)),
    Action.update_milestone: Policy(ResourceKind.milestone, Rule.team_access, ("created_by",)),
    Action.delete_milestone: Policy(ResourceKind.milestone, Rule.team_access, ("created_by",)),

    Action.update_comment: Policy(ResourceKind.comment, Rule.author_only, ("author_id",)),
    Action.delete_comment: Policy(ResourceKind.comment, Rule.author_only, ("author_id",)),
    Action.stop_time_log: Policy(ResourceKind.time_log, Rule.author_only, ("user_id",)),
    Action.delete_time_log: Policy(ResourceKind.time_log, Rule.author_only, ("user_id",)),

    Action.delete_attachment: Policy(ResourceKind.attachment, Rule.author_or_creator, ("uploaded_by",)),
    Action.delete_message: Policy(ResourceKind.message, Rule.author_or_creator, ("user_id",)),
}

_MODELS = {
    ResourceKind.team: models.Team,
    ResourceKind.task: models.Task,
    ResourceKind.milestone: models.Milestone,
    ResourceKind.comment: models.Comment,
    ResourceKind.attachment: models.Attachment,
    ResourceKind.time_log: models.TimeLog,
    ResourceKind.message: models.TeamMessage,
}

_LABELS = {
    ResourceKind.team: "Team",
    ResourceKind.task: "Task",
    ResourceKind.milestone: "Milestone",
    ResourceKind.comment: "Comment",
    ResourceKind.attachment: "Attachment",
    ResourceKind.time_log: "Time log",
    ResourceKind.message: "Message",
}

_DENY_MESSAGES = {
    DenyReason.not_member: "You are not a member of this team",
    DenyReason.not_creator: "Only the team creator can perform this action",
    DenyReason.not_author: "You can only modify your own {label}",
    DenyReason.invalid_assignee: "Assigned user must be a member of the team",
    DenyReason.invalid_milestone: "Milestone must belong to the same team",
}


@dataclass(frozen=True)
class ResourceLocator:
    """A team id, or an existing resource id from which the team is derived."""

    kind: ResourceKind
    id: int

    @classmethod
    def team(cls, team_id: int) -> "ResourceLocator":
        return cls(ResourceKind.team, team_id)

    @classmethod
    def task(cls, task_id: int) -> "ResourceLocator":
        return cls(ResourceKind.task, task_id)

    @classmethod
    def milestone(cls, milestone_id: int) -> "ResourceLocator":
        return cls(ResourceKind.milestone, milestone_id)

    @classmethod
    def comment(cls, comment_id: int) -> "ResourceLocator":
        return cls(ResourceKind.comment, comment_id)

    @classmethod
    def attachment(cls, attachment_id: int) -> "ResourceLocator":
        return cls(ResourceKind.attachment, attachment_id)

    @classmethod
    def time_log(cls, time_log_id: int) -> "ResourceLocator":
        return cls(ResourceKind.time_log, time_log_id)

    @classmethod
    def message(cls, message_id: int) -> "ResourceLocator":
        return cls(ResourceKind.message, message_id)


@dataclass(frozen=True)
class Decision:
    """
    Outcome of an authorization check.

    On allow, ``resource`` and ``team`` hold the rows resolved while deciding,
    so handlers do not need to fetch them again.
    """

    allowed: bool
    reason: Optional[DenyReason] = None
    resource: Any = None
    team: Optional[models.Team] = None
    message: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls, resource: Any = None, team: Optional[models.Team] = None) -> "Decision":
        return cls(True, resource=resource, team=team)

    @classmethod
    def deny(cls, reason: DenyReason, message: Optional[str] = None, resource: Any = None,
             team: Optional[models.Team] = None) -> "Decision":
        return cls(False, reason=reason, resource=resource, team=team,
                   message=message or _DENY_MESSAGES[reason])


# ============== Predicates ==============


def is_member(team_id: int, user_id: int, db: Session) -> bool:
    """True if an explicit membership row exists for (team, user)."""
    membership = (
        db.query(models.Membership.id)
        .filter(
            models.Membership.team_id == team_id,
            models.Membership.user_id == user_id
        )
        .first()
    )
    return membership is not None


def is_creator(team: models.Team, user_id: int) -> bool:
    """True if the user created the team. Independent of membership rows."""
    return team.created_by == user_id


def has_team_access(team: models.Team, user_id: int, db: Session) -> bool:
    """Membership OR ownership; both predicates are always consulted."""
    if is_member(team.id, user_id, db):
        return True
    return is_creator(team, user_id)


def accessible_team_ids(user_id: int, db: Session) -> List[int]:
    """Ids of all teams the user is a member or the creator of."""
    member_team_ids = (
        db.query(models.Membership.team_id)
        .filter(models.Membership.user_id == user_id)
    )
    rows = (
        db.query(models.Team.id)
        .filter(
            or_(
                models.Team.id.in_(member_team_ids),
                models.Team.created_by == user_id
            )
        )
        .all()
    )
    return [row.id for row in rows]


# ============== Resolution ==============


def resolve_resource(locator: ResourceLocator, db: Session) -> Tuple[Any, models.Team]:
    """
    Fetch the located row and its owning team.

    Raises:
        NotFound: the resource (or its team) does not exist
    """
    model = _MODELS[locator.kind]
    resource = db.query(model).filter(model.id == locator.id).first()
    if resource is None:
        logger.info(f"{_LABELS[locator.kind]} {locator.id} not found")
        raise NotFound(f"{_LABELS[locator.kind]} not found")

    if locator.kind == ResourceKind.team:
        return resource, resource

    if locator.kind in (ResourceKind.comment, ResourceKind.attachment, ResourceKind.time_log):
        team_id = resource.task.team_id
    else:
        team_id = resource.team_id

    team = db.query(models.Team).filter(models.Team.id == team_id).first()
    if team is None:
        logger.info(f"Team {team_id} owning {locator.kind.value} {locator.id} not found")
        raise NotFound("Team not found")
    return resource, team


def _has_direct_access(resource: Any, fields: Tuple[str, ...], user_id: int) -> bool:
    return any(getattr(resource, field) == user_id for field in fields)


# ============== Decisions ==============


def authorize(principal: Principal, action: Action, locator: ResourceLocator, db: Session) -> Decision:
    """
    Decide whether ``principal`` may perform ``action`` on the located resource.

    Args:
        principal: The authenticated actor
        action: What the actor wants to do
        locator: Team id or resource id the action targets
        db: Database session

    Returns:
        Decision (truthy when allowed; carries a DenyReason otherwise)

    Raises:
        NotFound: the located resource does not exist
        ValueError: the locator kind does not match the action

    Example:
        >>> decision = authorize(principal, Action.update_task, ResourceLocator.task(42), db)
        >>> if not decision:
        ...     print(decision.reason)
    """
    policy = POLICIES[action]
    if locator.kind != policy.kind:
        raise ValueError(f"Action {action.value} expects a {policy.kind.value} locator, got {locator.kind.value}")

    logger.debug(
        f"Authorizing user {principal.id} for {action.value} on {locator.kind.value} {locator.id}"
    )

    resource, team = resolve_resource(locator, db)
    user_id = principal.id

    if policy.rule == Rule.creator_only:
        if is_creator(team, user_id):
            return Decision.allow(resource, team)
        return _denied(principal, action, locator, DenyReason.not_creator, resource, team)

    if policy.rule == Rule.author_only:
        if _has_direct_access(resource, policy.direct, user_id):
            return Decision.allow(resource, team)
        return _denied(principal, action, locator, DenyReason.not_author, resource, team)

    if policy.rule == Rule.author_or_creator:
        if _has_direct_access(resource, policy.direct, user_id) or is_creator(team, user_id):
            return Decision.allow(resource, team)
        return _denied(principal, action, locator, DenyReason.not_author, resource, team)

    # Rule.team_access: direct access first, since it is broader than membership
    if policy.direct and _has_direct_access(resource, policy.direct, user_id):
        logger.debug(f"User {user_id} has direct access to {locator.kind.value} {locator.id}")
        return Decision.allow(resource, team)

    if is_member(team.id, user_id, db):
        return Decision.allow(resource, team)
    if is_creator(team, user_id):
        logger.debug(f"User {user_id} allowed on team {team.id} as creator without membership row")
        return Decision.allow(resource, team)

    return _denied(principal, action, locator, DenyReason.not_member, resource, team)


def _denied(principal: Principal, action: Action, locator: ResourceLocator, reason: DenyReason,
            resource: Any, team: models.Team) -> Decision:
    logger.info(
        f"Denied {action.value} on {locator.kind.value} {locator.id} "
        f"(team {team.id}) for user {principal.id}: {reason.value}"
    )
    message = _DENY_MESSAGES[reason].format(label=_LABELS[locator.kind].lower())
    return Decision.deny(reason, message=message, resource=resource, team=team)


def require(principal: Principal, action: Action, locator: ResourceLocator, db: Session) -> Decision:
    """
    Like ``authorize`` but raises on deny.

    Raises:
        NotFound: 404 if the located resource does not exist
        PermissionDenied: 403 carrying the DenyReason

    Example:
        >>> task = require(principal, Action.update_task, ResourceLocator.task(task_id), db).resource
    """
    decision = authorize(principal, action, locator, db)
    if not decision:
        raise PermissionDenied(decision.reason, decision.message)
    return decision


# ============== Field Validation ==============


def check_assignee(principal: Principal, team: models.Team, assignee_id: Optional[int], db: Session) -> Decision:
    """
    Validate a task assignee for ``team``.

    - Unassigning (None) is always valid.
    - Assigning to oneself requires the actor to have team access.
    - The team creator may assign anyone (creator override).
    - Otherwise the assignee must be a member or the team creator.

    Raises:
        NotFound: the assignee user does not exist
    """
    if assignee_id is None:
        return Decision.allow(team=team)

    assignee = db.query(models.User.id).filter(models.User.id == assignee_id).first()
    if assignee is None:
        logger.info(f"Assignee {assignee_id} not found")
        raise NotFound("User not found")

    if assignee_id == principal.id and not has_team_access(team, principal.id, db):
        logger.info(f"User {principal.id} cannot self-assign in team {team.id}: not a member")
        return Decision.deny(DenyReason.not_member, team=team)

    if is_creator(team, principal.id):
        return Decision.allow(team=team)

    if is_member(team.id, assignee_id, db) or is_creator(team, assignee_id):
        return Decision.allow(team=team)

    logger.info(
        f"User {principal.id} cannot assign user {assignee_id} in team {team.id}: not a member"
    )
    return Decision.deny(DenyReason.invalid_assignee, team=team)


def check_milestone(team: models.Team, milestone_id: Optional[int], db: Session) -> Decision:
    """Validate that a milestone (if any) belongs to ``team``."""
    if milestone_id is None:
        return Decision.allow(team=team)

    milestone = db.query(models.Milestone).filter(models.Milestone.id == milestone_id).first()
    if milestone is None or milestone.team_id != team.id:
        logger.info(f"Milestone {milestone_id} does not belong to team {team.id}")
        return Decision.deny(DenyReason.invalid_milestone, team=team)
    return Decision.allow(resource=milestone, team=team)


def require_valid(decision: Decision) -> Decision:
    """Raise PermissionDenied for a denied field-validation decision."""
    if not decision:
        raise PermissionDenied(decision.reason, decision.message)
    return decision
