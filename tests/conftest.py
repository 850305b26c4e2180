"""
Shared pytest fixtures for the Activity Tracker test suite.

Provides the Flask application, test client, database session, JWT-backed
request headers and reusable data factories for organizations, users,
projects, tasks and activities.

Key SDET Concepts Demonstrated:
- Session-scoped vs function-scoped fixtures for performance and isolation
- Factory pattern for flexible test-data creation
- Two tenants side by side to exercise tenant isolation
- In-process RSA key pair so tokens never depend on files on disk
"""

from __future__ import annotations

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from faker import Faker
from sqlalchemy import func, select

from shared.test_helpers import TEST_PRIVATE_KEY, TEST_PUBLIC_KEY, auth_headers, token_for

_TEST_ROOT = tempfile.mkdtemp(prefix="tracker-tests-")

# Set testing environment before importing the app
os.environ["FLASK_ENV"] = "testing"
os.environ["TEST_JWT_PRIVATE_KEY"] = TEST_PRIVATE_KEY
os.environ["TEST_JWT_PUBLIC_KEY"] = TEST_PUBLIC_KEY
os.environ.setdefault(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(_TEST_ROOT, 'tracker.db')}?check_same_thread=False",
)
os.environ.setdefault("UPLOAD_FOLDER", os.path.join(_TEST_ROOT, "uploads"))

from tracker_app import create_app, db
from tracker_app.models import (
    Activity,
    Board,
    Organization,
    Project,
    ProjectMember,
    Task,
    User,
)
from tracker_app.routes.common import seed_default_statuses
from tracker_app.workflow import (
    TODO,
    ActivityPriority,
    ApprovalState,
    TaskPriority,
    UserRole,
    generate_ticket_number,
    section_for_status,
)

fake = Faker()

DEFAULT_PASSWORD = "Password123"


@pytest.fixture(scope="session")
def app():
    """
    Provide the Flask application instance for the entire test session.

    Created once with the 'testing' configuration; the database and upload
    folder live in a temporary directory.
    """
    application = create_app("testing")
    yield application


@pytest.fixture(scope="function")
def client(app):
    """Provide a fresh Flask test client for each test."""
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture(scope="function")
def db_session(app):
    """
    Provide a clean database for each test function.

    Creates all tables before the test and drops them afterwards so no rows
    leak between tests.
    """
    with app.app_context():
        db.create_all()
        yield db
        db.session.rollback()
        db.session.remove()
        db.drop_all()
    shutil.rmtree(app.config["UPLOAD_FOLDER"], ignore_errors=True)
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)


# =====================================================================
# Data factories
# =====================================================================


@pytest.fixture
def organization_factory(db_session):
    """Create organizations with a seeded default status catalog."""

    def _create_organization(*, name: str | None = None, seed_statuses: bool = True) -> Organization:
        organization = Organization(name=name or fake.company())
        db_session.session.add(organization)
        db_session.session.flush()
        if seed_statuses:
            seed_default_statuses(organization.id)
        db_session.session.commit()
        return organization

    return _create_organization


@pytest.fixture
def user_factory(db_session):
    """Create users; pass ``organization=None`` for a user without a tenant."""

    def _create_user(
        organization: Organization | None,
        *,
        role: str = UserRole.MEMBER.value,
        email: str | None = None,
        name: str | None = None,
        password: str = DEFAULT_PASSWORD,
        is_active: bool = True,
    ) -> User:
        user = User(
            email=(email or fake.unique.email()).lower(),
            name=name or fake.name(),
            role=role,
            is_active=is_active,
            organization_id=organization.id if organization else None,
        )
        user.set_password(password)
        db_session.session.add(user)
        db_session.session.commit()
        return user

    return _create_user


@pytest.fixture
def project_factory(db_session):
    """Create projects owned by *owner*, optionally with extra members."""

    def _create_project(
        owner: User,
        *,
        members: list[User] | None = None,
        name: str | None = None,
    ) -> Project:
        project = Project(
            name=name or fake.catch_phrase()[:200],
            description=fake.sentence(),
            organization_id=owner.organization_id,
            owner_id=owner.id,
        )
        project.memberships = [ProjectMember(user_id=owner.id, role="owner")]
        for member in members or []:
            project.memberships.append(ProjectMember(user_id=member.id))
        db_session.session.add(project)
        db_session.session.commit()
        return project

    return _create_project


@pytest.fixture
def board_factory(db_session):
    def _create_board(owner: User, *, project: Project | None = None, name: str | None = None) -> Board:
        board = Board(
            name=name or f"{fake.word().title()} Board",
            project_id=project.id if project else None,
            organization_id=owner.organization_id,
            owner_id=owner.id,
        )
        db_session.session.add(board)
        db_session.session.commit()
        return board

    return _create_board


@pytest.fixture
def task_factory(db_session):
    """
    Create tasks on a board.

    ``section`` defaults to the lane matching ``status`` and ``position``
    to the end of that lane.
    """

    def _create_task(
        board: Board,
        creator: User,
        *,
        assignee: User | None = None,
        title: str | None = None,
        status: str = TODO,
        priority: str = TaskPriority.MEDIUM.value,
        section: str | None = None,
        position: int | None = None,
        due_date: datetime | None = None,
        tags: list[str] | None = None,
    ) -> Task:
        section = section or section_for_status(status)
        if position is None:
            position = db_session.session.scalar(
                select(func.count(Task.id)).where(
                    Task.board_id == board.id, Task.section == section
                )
            )
        task = Task(
            board_id=board.id,
            project_id=board.project_id,
            organization_id=board.organization_id,
            created_by_id=creator.id,
            assignee_id=assignee.id if assignee else None,
            title=title or fake.sentence(nb_words=4),
            description=fake.paragraph(),
            status=status,
            priority=priority,
            section=section,
            position=position,
            due_date=due_date,
            tags=tags or [],
        )
        db_session.session.add(task)
        db_session.session.commit()
        return task

    return _create_task


@pytest.fixture
def activity_factory(db_session):
    def _create_activity(
        project: Project,
        creator: User,
        *,
        assignees: list[User] | None = None,
        approval_state: str = ApprovalState.DRAFT.value,
        status: str = TODO,
        title: str | None = None,
    ) -> Activity:
        now = datetime.now(timezone.utc)
        activity = Activity(
            ticket_number=generate_ticket_number(),
            title=title or fake.sentence(nb_words=3),
            description=fake.paragraph(),
            start_date=now,
            end_date=now + timedelta(days=2),
            status=status,
            approval_state=approval_state,
            priority=ActivityPriority.MEDIUM.value,
            project_id=project.id,
            organization_id=project.organization_id,
            created_by_id=creator.id,
        )
        activity.assignees = list(assignees or [])
        db_session.session.add(activity)
        db_session.session.commit()
        return activity

    return _create_activity


# =====================================================================
# A ready-made tenant
# =====================================================================


@pytest.fixture
def organization(organization_factory) -> Organization:
    return organization_factory(name="Acme Corp")


@pytest.fixture
def admin(user_factory, organization) -> User:
    return user_factory(organization, role=UserRole.ADMIN.value, name="Ada Admin")


@pytest.fixture
def manager(user_factory, organization) -> User:
    return user_factory(organization, role=UserRole.PROJECT_MANAGER.value, name="Pat Manager")


@pytest.fixture
def pmo(user_factory, organization) -> User:
    return user_factory(organization, role=UserRole.PMO.value, name="Olga Pmo")


@pytest.fixture
def member(user_factory, organization) -> User:
    return user_factory(organization, name="Mia Member")


@pytest.fixture
def other_member(user_factory, organization) -> User:
    return user_factory(organization, name="Noah Member")


@pytest.fixture
def project(project_factory, manager, member) -> Project:
    """A project owned by the manager with ``member`` on the team."""
    return project_factory(manager, members=[member], name="Website Relaunch")


@pytest.fixture
def board(board_factory, manager, project) -> Board:
    return board_factory(manager, project=project, name="Website Board")


@pytest.fixture
def member_task(task_factory, board, manager, member) -> Task:
    """A To Do task created by the manager and assigned to ``member``."""
    return task_factory(board, manager, assignee=member, title="Draft sitemap")


# =====================================================================
# Foreign tenant
# =====================================================================


@pytest.fixture
def other_organization(organization_factory) -> Organization:
    return organization_factory(name="Globex")


@pytest.fixture
def outsider(user_factory, other_organization) -> User:
    """An admin of a different organization."""
    return user_factory(other_organization, role=UserRole.ADMIN.value, name="Olivia Outsider")


# =====================================================================
# Headers
# =====================================================================


@pytest.fixture
def admin_headers(admin) -> dict[str, str]:
    return auth_headers(token_for(admin))


@pytest.fixture
def manager_headers(manager) -> dict[str, str]:
    return auth_headers(token_for(manager))


@pytest.fixture
def pmo_headers(pmo) -> dict[str, str]:
    return auth_headers(token_for(pmo))


@pytest.fixture
def member_headers(member) -> dict[str, str]:
    return auth_headers(token_for(member))


@pytest.fixture
def other_member_headers(other_member) -> dict[str, str]:
    return auth_headers(token_for(other_member))


@pytest.fixture
def outsider_headers(outsider) -> dict[str, str]:
    return auth_headers(token_for(outsider))


@pytest.fixture
def headers_for():
    """Build headers for any user created inside a test."""

    def _headers(user: User) -> dict[str, str]:
        return auth_headers(token_for(user))

    return _headers


@pytest.fixture
def valid_task_data() -> dict[str, Any]:
    return {
        "title": "Write release notes",
        "description": "Summarise the sprint",
        "priority": "high",
        "due_date": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
        "tags": ["docs"],
    }

