"""
Database Models for the Activity Tracker.

Defines the SQLAlchemy ORM models for organizations (tenants), users,
projects, boards, tasks with their comments/attachments/history, activities,
the per-organization status catalog, approval requests and the audit log.
Every organization-owned row carries ``organization_id`` so the API layer
can enforce tenant isolation with a single filter.

Key Concepts Demonstrated:
- SQLAlchemy declarative ORM models with typed columns
- Association table and association model for many-to-many relations
- JSON columns for tags, reactions, settings and change sets
- Timezone-aware datetime handling (UTC normalisation)
- Serialisation helpers (``to_dict``) that never leak secrets
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from werkzeug.security import check_password_hash, generate_password_hash

from . import db
from .workflow import (
    DEFAULT_SECTION,
    TODO,
    ActivityPriority,
    ApprovalState,
    ProjectStatus,
    ReviewState,
    TaskPriority,
    UserRole,
    priority_color,
    progress_for_status,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_utc_iso(value: datetime | None) -> str | None:
    """
    Convert a datetime to a UTC ISO-8601 string.

    SQLite does not store timezone information, so values read back from
    the database may be naive even though they were written in UTC.  Naive
    values are assumed UTC; aware values are converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class TimestampMixin:
    """Adds ``created_at`` / ``updated_at`` UTC columns."""

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


activity_assignees = db.Table(
    "activity_assignees",
    db.Column(
        "activity_id",
        db.Integer,
        db.ForeignKey("activities.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    db.Column(
        "user_id",
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Organization(TimestampMixin, db.Model):
    """
    A tenant.  Users, projects, boards, tasks and activities all belong to
    exactly one organization.

    ``created_by_id`` is a plain integer rather than a foreign key because
    users reference organizations too; a circular constraint would make
    table creation order-dependent.
    """

    __tablename__ = "organizations"

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(200), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    industry: str | None = db.Column(db.String(100), nullable=True)
    size: str | None = db.Column(db.String(50), nullable=True)
    timezone: str = db.Column(db.String(64), nullable=False, default="UTC")
    currency: str = db.Column(db.String(10), nullable=False, default="USD")
    logo_url: str | None = db.Column(db.String(500), nullable=True)
    settings: dict = db.Column(db.JSON, nullable=False, default=dict)
    created_by_id: int | None = db.Column(db.Integer, nullable=True)

    users = db.relationship("User", back_populates="organization", lazy="select")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "industry": self.industry,
            "size": self.size,
            "timezone": self.timezone,
            "currency": self.currency,
            "logo_url": self.logo_url,
            "settings": self.settings or {},
            "created_by_id": self.created_by_id,
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Organization {self.id}: {self.name}>"


class User(TimestampMixin, db.Model):
    """
    An account that can sign in.

    Attributes:
        email: Unique login identifier (max 255 chars).
        role: One of ``UserRole``; drives every permission check.
        is_active: Deactivated users cannot log in and existing tokens
            stop working.
        organization_id: Tenant the user belongs to, or ``None`` until the
            user creates or is added to one.
        must_change_password: Set while the account still uses a generated
            one-time password.
        preferences: Free-form UI preferences.
    """

    __tablename__ = "users"
    __table_args__ = (
        db.CheckConstraint("length(email) <= 255", name="ck_users_email_len"),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    email: str = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name: str = db.Column(db.String(200), nullable=False)
    password_hash: str = db.Column(db.String(256), nullable=False)
    role: str = db.Column(db.String(30), nullable=False, default=UserRole.MEMBER.value)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)
    organization_id: int | None = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True
    )
    preferences: dict = db.Column(db.JSON, nullable=False, default=dict)
    must_change_password: bool = db.Column(db.Boolean, nullable=False, default=False)

    organization = db.relationship("Organization", back_populates="users")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self) -> dict[str, Any]:
        """Serialise the user without the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "organization_id": self.organization_id,
            "preferences": self.preferences or {},
            "must_change_password": self.must_change_password,
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }

    def summary(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email}

    def __repr__(self) -> str:
        return f"<User {self.id}: {self.email}>"


class ProjectMember(db.Model):
    """Membership of a user in a project, with a per-project role."""

    __tablename__ = "project_members"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_members"),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    project_id: int = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id: int = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: str = db.Column(db.String(30), nullable=False, default="member")
    created_at: datetime = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    project = db.relationship("Project", back_populates="memberships")
    user = db.relationship("User")

    def to_dict(self) -> dict[str, Any]:
        data = self.user.to_dict() if self.user else {"id": self.user_id}
        data["project_role"] = self.role
        data["joined_at"] = _to_utc_iso(self.created_at)
        return data


class Project(TimestampMixin, db.Model):
    __tablename__ = "projects"

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(200), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    status: str = db.Column(
        db.String(20), nullable=False, default=ProjectStatus.ACTIVE.value
    )
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    owner_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )

    owner = db.relationship("User", foreign_keys=[owner_id])
    memberships = db.relationship(
        "ProjectMember",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectMember.created_at",
    )

    @property
    def member_ids(self) -> set[int]:
        return {membership.user_id for membership in self.memberships}

    def has_member(self, user_id: int) -> bool:
        return user_id in self.member_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "organization_id": self.organization_id,
            "owner_id": self.owner_id,
            "owner_name": self.owner.name if self.owner else None,
            "member_count": len(self.memberships),
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.name}>"


class Board(TimestampMixin, db.Model):
    """A Kanban board; deleting it only clears ``is_active``."""

    __tablename__ = "boards"

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(200), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    project_id: int | None = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True
    )
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    owner_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)

    project = db.relationship("Project")
    owner = db.relationship("User")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "project_id": self.project_id,
            "organization_id": self.organization_id,
            "owner_id": self.owner_id,
            "is_active": self.is_active,
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }


class Task(TimestampMixin, db.Model):
    """
    A board item assigned to a user.

    ``status`` holds a name from the organization's task status catalog and
    ``section`` the board lane the task is drawn in; ``position`` orders
    tasks within a section starting at 0.

    JSON columns (``tags``, ``custom_data``) must be reassigned rather than
    mutated in place for SQLAlchemy to notice the change.
    """

    __tablename__ = "tasks"

    id: int = db.Column(db.Integer, primary_key=True)
    board_id: int | None = db.Column(
        db.Integer, db.ForeignKey("boards.id"), nullable=True, index=True
    )
    project_id: int | None = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=True, index=True
    )
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    activity_id: int | None = db.Column(
        db.Integer, db.ForeignKey("activities.id"), nullable=True
    )
    created_by_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    assignee_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True, index=True
    )
    title: str = db.Column(db.String(200), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    status: str = db.Column(db.String(100), nullable=False, default=TODO)
    priority: str = db.Column(
        db.String(20), nullable=False, default=TaskPriority.MEDIUM.value
    )
    due_date: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    tags: list = db.Column(db.JSON, nullable=False, default=list)
    custom_data: dict = db.Column(db.JSON, nullable=False, default=dict)
    section: str = db.Column(db.String(100), nullable=False, default=DEFAULT_SECTION)
    position: int = db.Column(db.Integer, nullable=False, default=0)
    is_approved: bool = db.Column(db.Boolean, nullable=False, default=False)
    approved_by_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )
    approved_at: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)

    board = db.relationship("Board")
    project = db.relationship("Project")
    creator = db.relationship("User", foreign_keys=[created_by_id])
    assignee = db.relationship("User", foreign_keys=[assignee_id])
    activity = db.relationship("Activity", foreign_keys=[activity_id])
    comments = db.relationship(
        "TaskComment", back_populates="task", cascade="all, delete-orphan"
    )
    attachments = db.relationship(
        "TaskAttachment", back_populates="task", cascade="all, delete-orphan"
    )
    history = db.relationship(
        "TaskHistory", back_populates="task", cascade="all, delete-orphan"
    )

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.due_date is None or progress_for_status(self.status) == 100:
            return False
        due = self.due_date
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        return due < (now or utcnow())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "board_id": self.board_id,
            "project_id": self.project_id,
            "project_name": self.project.name if self.project else None,
            "organization_id": self.organization_id,
            "activity_id": self.activity_id,
            "created_by_id": self.created_by_id,
            "created_by_name": self.creator.name if self.creator else None,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee.name if self.assignee else None,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "priority_color": priority_color(self.priority),
            "progress": progress_for_status(self.status),
            "due_date": _to_utc_iso(self.due_date),
            "is_overdue": self.is_overdue(),
            "tags": self.tags or [],
            "custom_data": self.custom_data or {},
            "section": self.section,
            "position": self.position,
            "is_approved": self.is_approved,
            "approved_by_id": self.approved_by_id,
            "approved_at": _to_utc_iso(self.approved_at),
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Task {self.id}: {self.title}>"


class TaskComment(TimestampMixin, db.Model):
    __tablename__ = "task_comments"

    id: int = db.Column(db.Integer, primary_key=True)
    task_id: int = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    body: str = db.Column(db.Text, nullable=False)
    parent_comment_id: int | None = db.Column(
        db.Integer, db.ForeignKey("task_comments.id", ondelete="CASCADE"), nullable=True
    )
    is_internal: bool = db.Column(db.Boolean, nullable=False, default=False)
    is_pinned: bool = db.Column(db.Boolean, nullable=False, default=False)
    mentions: list = db.Column(db.JSON, nullable=False, default=list)
    reactions: dict = db.Column(db.JSON, nullable=False, default=dict)
    is_edited: bool = db.Column(db.Boolean, nullable=False, default=False)
    last_edited_at: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    last_edited_by_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )

    task = db.relationship("Task", back_populates="comments")
    author = db.relationship("User", foreign_keys=[author_id])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "author_id": self.author_id,
            "author_name": self.author.name if self.author else None,
            "body": self.body,
            "parent_comment_id": self.parent_comment_id,
            "is_internal": self.is_internal,
            "is_pinned": self.is_pinned,
            "mentions": self.mentions or [],
            "reactions": self.reactions or {},
            "is_edited": self.is_edited,
            "last_edited_at": _to_utc_iso(self.last_edited_at),
            "last_edited_by_id": self.last_edited_by_id,
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }


IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif"})
DOCUMENT_EXTENSIONS = frozenset(
    {"pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt"}
)


def format_file_size(size: int) -> str:
    """Render a byte count as ``B`` / ``KB`` / ``MB`` / ``GB`` text."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}"
    return f"{size} B"


class TaskAttachment(db.Model):
    __tablename__ = "task_attachments"

    id: int = db.Column(db.Integer, primary_key=True)
    task_id: int = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    uploaded_by_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    file_name: str = db.Column(db.String(255), nullable=False)
    stored_name: str = db.Column(db.String(255), nullable=False)
    file_size: int = db.Column(db.Integer, nullable=False)
    file_type: str = db.Column(db.String(20), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    file_hash: str = db.Column(db.String(64), nullable=False)
    download_count: int = db.Column(db.Integer, nullable=False, default=0)
    last_downloaded_at: datetime | None = db.Column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at: datetime = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    task = db.relationship("Task", back_populates="attachments")
    uploaded_by = db.relationship("User")

    @property
    def is_image(self) -> bool:
        return self.file_type in IMAGE_EXTENSIONS

    @property
    def is_document(self) -> bool:
        return self.file_type in DOCUMENT_EXTENSIONS

    def storage_path(self, upload_root: str) -> Path:
        return Path(upload_root) / "tasks" / str(self.task_id) / self.stored_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "uploaded_by_id": self.uploaded_by_id,
            "uploaded_by_name": self.uploaded_by.name if self.uploaded_by else None,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "formatted_file_size": format_file_size(self.file_size),
            "file_type": self.file_type,
            "description": self.description,
            "file_hash": self.file_hash,
            "download_count": self.download_count,
            "last_downloaded_at": _to_utc_iso(self.last_downloaded_at),
            "is_image": self.is_image,
            "is_document": self.is_document,
            "download_url": (
                f"/api/tasks/{self.task_id}/attachments/{self.id}/download"
            ),
            "created_at": _to_utc_iso(self.created_at),
        }


class TaskHistory(db.Model):
    """
    Audit trail entry for a task.

    ``changes`` is a list of ``{"field", "old_value", "new_value"}`` dicts.
    """

    __tablename__ = "task_history"

    id: int = db.Column(db.Integer, primary_key=True)
    task_id: int = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    actor_id: int | None = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    change_type: str = db.Column(db.String(30), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    changes: list = db.Column(db.JSON, nullable=False, default=list)
    created_at: datetime = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    task = db.relationship("Task", back_populates="history")
    actor = db.relationship("User")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "actor_id": self.actor_id,
            "actor_name": self.actor.name if self.actor else None,
            "change_type": self.change_type,
            "description": self.description,
            "changes": self.changes or [],
            "created_at": _to_utc_iso(self.created_at),
        }


class Activity(TimestampMixin, db.Model):
    """
    A unit of reported work that goes through PM approval.

    ``status`` tracks the work itself (activity status catalog) while
    ``approval_state`` tracks the review lifecycle (``ApprovalState``).
    """

    __tablename__ = "activities"

    id: int = db.Column(db.Integer, primary_key=True)
    ticket_number: str = db.Column(db.String(50), unique=True, nullable=False, index=True)
    title: str = db.Column(db.String(200), nullable=False)
    description: str | None = db.Column(db.Text, nullable=True)
    start_date: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    status: str = db.Column(db.String(100), nullable=False, default=TODO)
    approval_state: str = db.Column(
        db.String(20), nullable=False, default=ApprovalState.DRAFT.value
    )
    priority: str = db.Column(
        db.String(20), nullable=False, default=ActivityPriority.MEDIUM.value
    )
    tags: list = db.Column(db.JSON, nullable=False, default=list)
    project_id: int = db.Column(
        db.Integer, db.ForeignKey("projects.id"), nullable=False, index=True
    )
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    created_by_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    updated_by_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )
    approved_by_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )
    approved_at: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    # Back reference to the originating task; plain integer since tasks
    # already hold a foreign key to activities.
    task_id: int | None = db.Column(db.Integer, nullable=True)

    project = db.relationship("Project")
    creator = db.relationship("User", foreign_keys=[created_by_id])
    assignees = db.relationship("User", secondary=activity_assignees)
    comments = db.relationship(
        "Comment",
        back_populates="activity",
        cascade="all, delete-orphan",
        order_by="Comment.created_at",
    )

    @property
    def assignee_ids(self) -> list[int]:
        return [user.id for user in self.assignees]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_number": self.ticket_number,
            "title": self.title,
            "description": self.description,
            "start_date": _to_utc_iso(self.start_date),
            "end_date": _to_utc_iso(self.end_date),
            "status": self.status,
            "approval_state": self.approval_state,
            "priority": self.priority,
            "tags": self.tags or [],
            "project_id": self.project_id,
            "project_name": self.project.name if self.project else None,
            "organization_id": self.organization_id,
            "created_by_id": self.created_by_id,
            "created_by_name": self.creator.name if self.creator else None,
            "updated_by_id": self.updated_by_id,
            "approved_by_id": self.approved_by_id,
            "approved_at": _to_utc_iso(self.approved_at),
            "task_id": self.task_id,
            "assignees": [user.summary() for user in self.assignees],
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Activity {self.ticket_number}: {self.title}>"


class Comment(db.Model):
    """A comment on an activity; rejection reasons are stored here too."""

    __tablename__ = "comments"

    id: int = db.Column(db.Integer, primary_key=True)
    activity_id: int = db.Column(
        db.Integer, db.ForeignKey("activities.id", ondelete="CASCADE"), nullable=False
    )
    author_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    body: str = db.Column(db.Text, nullable=False)
    created_at: datetime = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow
    )

    activity = db.relationship("Activity", back_populates="comments")
    author = db.relationship("User")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "activity_id": self.activity_id,
            "author_id": self.author_id,
            "author_name": self.author.name if self.author else None,
            "body": self.body,
            "created_at": _to_utc_iso(self.created_at),
        }


class StatusConfiguration(TimestampMixin, db.Model):
    """One entry of an organization's status catalog."""

    __tablename__ = "status_configurations"
    __table_args__ = (
        db.UniqueConstraint(
            "organization_id", "type", "name", name="uq_status_configuration_name"
        ),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    type: str = db.Column(db.String(20), nullable=False)
    name: str = db.Column(db.String(100), nullable=False)
    color: str = db.Column(db.String(7), nullable=False, default="#808080")
    order_index: int = db.Column(db.Integer, nullable=False, default=0)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "type": self.type,
            "name": self.name,
            "color": self.color,
            "order_index": self.order_index,
            "is_active": self.is_active,
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }


class ApprovalRequest(TimestampMixin, db.Model):
    """
    A request for a manager to sign off an activity or a finished task.

    ``entity_type`` / ``entity_id`` point at the reviewed row without a
    foreign key, since requests outlive the tasks they were raised for.
    ``snapshot`` keeps the reviewed row as it looked when the request
    was opened.
    """

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index("ix_approval_requests_entity", "entity_type", "entity_id"),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    organization_id: int = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True
    )
    entity_type: str = db.Column(db.String(20), nullable=False)
    entity_id: int = db.Column(db.Integer, nullable=False)
    state: str = db.Column(
        db.String(20), nullable=False, default=ReviewState.PENDING.value, index=True
    )
    requested_by_id: int = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    approver_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True, index=True
    )
    processed_by_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True
    )
    processed_at: datetime | None = db.Column(db.DateTime(timezone=True), nullable=True)
    comments: str | None = db.Column(db.Text, nullable=True)
    snapshot: dict = db.Column(db.JSON, nullable=False, default=dict)

    requested_by = db.relationship("User", foreign_keys=[requested_by_id])
    approver = db.relationship("User", foreign_keys=[approver_id])
    processed_by = db.relationship("User", foreign_keys=[processed_by_id])

    @property
    def is_pending(self) -> bool:
        return self.state == ReviewState.PENDING.value

    def hours_waiting(self, now: datetime | None = None) -> float:
        """Hours from opening the request until *now* (naive values are UTC)."""
        created, now = self.created_at, now or utcnow()
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds() / 3600

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "state": self.state,
            "requested_by_id": self.requested_by_id,
            "requested_by_name": self.requested_by.name if self.requested_by else None,
            "approver_id": self.approver_id,
            "approver_name": self.approver.name if self.approver else None,
            "processed_by_id": self.processed_by_id,
            "processed_at": _to_utc_iso(self.processed_at),
            "comments": self.comments,
            "snapshot": self.snapshot or {},
            "created_at": _to_utc_iso(self.created_at),
            "updated_at": _to_utc_iso(self.updated_at),
        }


class AuditLog(db.Model):
    """
    One recorded action of a user.

    ``user_id`` and ``organization_id`` are empty for failed logins with
    an unknown email.
    """

    __tablename__ = "audit_logs"

    id: int = db.Column(db.Integer, primary_key=True)
    organization_id: int | None = db.Column(
        db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True
    )
    user_id: int | None = db.Column(
        db.Integer, db.ForeignKey("users.id"), nullable=True, index=True
    )
    entity_type: str = db.Column(db.String(30), nullable=False)
    entity_id: int | None = db.Column(db.Integer, nullable=True)
    action: str = db.Column(db.String(30), nullable=False, index=True)
    old_values: dict | None = db.Column(db.JSON, nullable=True)
    new_values: dict | None = db.Column(db.JSON, nullable=True)
    ip_address: str | None = db.Column(db.String(64), nullable=True)
    user_agent: str | None = db.Column(db.String(255), nullable=True)
    created_at: datetime = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    user = db.relationship("User")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": _to_utc_iso(self.created_at),
        }
