"""
Document Schemas for the Task Tracker

Each Pydantic model mirrors a document shape in the store. Collection names
live in COLLECTION_* constants; field names are camelCase, as persisted.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

COLLECTION_TASKS = "tasks"
COLLECTION_SETTINGS = "settings"
COLLECTION_USERS = "user"
COLLECTION_SESSIONS = "session"

SETTINGS_DOC_ID = "global"

Role = Literal["Admin", "Manager", "Member"]
CANONICAL_ROLES = {"admin": "Admin", "manager": "Manager", "member": "Member"}

TaskStatus = Literal["Pending", "In Progress", "Completed", "To hold", "Overdue"]
TaskPriority = Literal["Low", "Medium", "High", "Urgent"]


def canonical_role(role: Optional[str]) -> str:
    """'ADMIN' -> 'Admin'. Unknown roles come back stripped but otherwise untouched."""
    raw = (role or "").strip()
    return CANONICAL_ROLES.get(raw.lower(), raw)


# Users
class User(BaseModel):
    """Snapshot of a user as embedded in tasks and activity entries."""

    id: str = "unknown"
    name: str = "Unknown User"
    email: str = ""
    role: str = "Member"
    avatarUrl: Optional[str] = None
    department: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _normalize_role(cls, v):
        return canonical_role(v) or "Member"

    @field_validator("name", mode="before")
    @classmethod
    def _default_name(cls, v):
        return v or "Unknown User"

    @field_validator("email", mode="before")
    @classmethod
    def _default_email(cls, v):
        return v or ""


# Settings & permissions
class PermissionRule(BaseModel):
    permission: str
    admin: bool = False
    manager: bool = False
    member: bool = False


class AppSettings(BaseModel):
    id: Optional[str] = None
    customFields: Dict[str, List[str]] = Field(default_factory=dict)
    rules: List[PermissionRule] = Field(default_factory=list)


# Activity log
class Activity(BaseModel):
    id: str
    user: User
    action: str
    details: Optional[str] = None
    timestamp: Optional[datetime] = None


# Tasks
class FileAttachment(BaseModel):
    name: str
    url: str
    size: Optional[int] = None
    type: Optional[str] = None


class Task(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    label: Optional[str] = None
    status: str = "Pending"
    priority: str = "Medium"

    assignee: Optional[User] = None
    creatorId: Optional[str] = None
    viewers: List[User] = Field(default_factory=list)

    department: Optional[str] = None
    sender: Optional[str] = None
    senderLocation: Optional[str] = None
    receiver: Optional[str] = None
    receiverLocation: Optional[str] = None
    period: str = ""

    initialDemand: float = 0.0
    initialDemandCurrency: str = "USD"
    officialSettlement: float = 0.0
    officialSettlementCurrency: str = "USD"
    motivation: float = 0.0
    motivationCurrency: str = "USD"

    receivedDate: Optional[datetime] = None
    entryDate: Optional[datetime] = None
    dueDate: Optional[datetime] = None

    files: List[FileAttachment] = Field(default_factory=list)
    activity: List[Activity] = Field(default_factory=list)

    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
