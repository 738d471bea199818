import re

from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import Any, Dict, Optional, List

from models import InvitationStatus, MilestoneStatus, Priority, TaskStatus
from time_utils import as_utc

PHONE_PATTERN = re.compile(r"^[+0-9\-() ]{10,15}$")


# User schemas
class UserSummary(BaseModel):
    id: int
    username: str
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class UserPublic(UserSummary):
    email: str


class UserProfile(UserPublic):
    bio: Optional[str] = None
    phone: Optional[str] = None
    timezone: Optional[str] = None
    notification_settings: Optional[Dict[str, Any]] = None
    theme_settings: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    bio: Optional[str] = Field(None, max_length=500)
    phone: Optional[str] = None
    timezone: Optional[str] = Field(None, max_length=64)
    notification_settings: Optional[Dict[str, Any]] = None
    theme_settings: Optional[Dict[str, Any]] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value != "" and not PHONE_PATTERN.match(value):
            raise ValueError("Invalid phone number format")
        return value


# Auth schemas
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    success: bool = True
    user: UserPublic
    token: str


class PrincipalResponse(BaseModel):
    id: int
    email: str


# Team schemas
class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class Team(BaseModel):
    id: int
    name: str
    created_by: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TeamWithCreator(Team):
    creator: Optional[UserSummary] = None


class MemberAdd(BaseModel):
    user_id: int


class InviteRequest(BaseModel):
    email: EmailStr


class Invitation(BaseModel):
    id: int
    team_id: int
    inviter_id: int
    invitee_id: int
    status: InvitationStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PendingInvitation(Invitation):
    team_name: str
    inviter_name: str


# Team message schemas
class MessageCreate(BaseModel):
    message: str = Field(..., min_length=1)
    message_type: str = Field("text", max_length=50)
    metadata: Optional[Dict[str, Any]] = None


class Message(BaseModel):
    id: int
    team_id: int
    user_id: int
    message: str
    message_type: str
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="message_metadata")
    author: Optional[UserSummary] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        populate_by_name = True


# Deadlines
class DueDateFields(BaseModel):
    """Converts incoming deadlines to UTC; naive values are taken as UTC already."""
    due_date: Optional[datetime] = None

    @field_validator("due_date")
    @classmethod
    def normalize_due_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)


# Milestone schemas
class MilestoneCreate(DueDateFields):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    team_id: int
    priority: Priority = Priority.medium


class MilestoneUpdate(DueDateFields):
    """Status and progress are derived from tasks and cannot be set."""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[Priority] = None


class Milestone(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    team_id: int
    created_by: Optional[int] = None
    priority: Priority
    status: MilestoneStatus
    progress_percentage: int
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MilestoneWithStats(Milestone):
    total_tasks: int = 0
    completed_tasks: int = 0
    created_by_name: Optional[str] = None


# Task schemas
class TaskCreate(DueDateFields):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    team_id: int
    assigned_to_id: Optional[int] = None
    milestone_id: Optional[int] = None
    priority: Priority = Priority.medium


class TaskUpdate(DueDateFields):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[Priority] = None
    assigned_to_id: Optional[int] = None
    milestone_id: Optional[int] = None


class Task(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    team_id: int
    created_by: Optional[int] = None
    assigned_to_id: Optional[int] = None
    assigned_by_id: Optional[int] = None
    milestone_id: Optional[int] = None
    status: TaskStatus
    priority: Priority
    due_date: Optional[datetime] = None
    creator: Optional[UserSummary] = None
    assignee: Optional[UserSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Comment schemas
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class CommentUpdate(BaseModel):
    content: str = Field(..., min_length=1)


class Comment(BaseModel):
    id: int
    task_id: int
    author_id: int
    content: str
    author: Optional[UserSummary] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Attachment schemas
class Attachment(BaseModel):
    id: int
    task_id: int
    filename: str
    original_name: str
    path: str
    mimetype: Optional[str] = None
    size: Optional[int] = None
    uploaded_by: int
    uploader: Optional[UserSummary] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Time log schemas
class TimerStart(BaseModel):
    description: Optional[str] = None


class TimeLogCreate(BaseModel):
    start_time: datetime
    end_time: datetime
    description: Optional[str] = None


class TimeLog(BaseModel):
    id: int
    task_id: int
    user_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    description: Optional[str] = None
    is_active: bool
    user: Optional[UserSummary] = None

    class Config:
        from_attributes = True


class TimerStarted(BaseModel):
    time_log: TimeLog
    stopped: List[TimeLog] = []


class TaskTimeLogs(BaseModel):
    time_logs: List[TimeLog] = []
    total_minutes: int = 0
