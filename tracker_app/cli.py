"""
Flask CLI commands.

    flask --app wsgi init-db
    flask --app wsgi create-organization "Acme" admin@acme.test "Ada Admin" --password S3cretpass
    flask --app wsgi seed-demo
    flask --app wsgi purge-audit-logs --days 90
"""

from __future__ import annotations

import logging
from datetime import timedelta

import click
from flask import Flask, current_app
from sqlalchemy import select

from . import db
from .audit import purge_audit_logs
from .models import (
    Activity,
    Board,
    Organization,
    Project,
    ProjectMember,
    Task,
    User,
    utcnow,
)
from .routes.common import generate_temporary_password, seed_default_statuses
from .workflow import (
    COMPLETED_SECTION,
    DEFAULT_SECTION,
    DONE,
    IN_PROGRESS,
    TODO,
    ActivityPriority,
    ApprovalState,
    TaskPriority,
    UserRole,
    generate_ticket_number,
)

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "Demo12345"
DEMO_ORGANIZATION = "Demo Organization"


def create_organization_with_admin(
    name: str, email: str, admin_name: str, password: str
) -> tuple[Organization, User]:
    """
    Create an organization, its admin user and its default status catalog.

    Raises:
        click.ClickException: If the email is already registered.
    """
    email = email.strip().lower()
    if db.session.scalar(select(User).where(User.email == email)):
        raise click.ClickException(f"Email already exists: {email}")

    organization = Organization(name=name.strip())
    db.session.add(organization)
    db.session.flush()

    admin = User(
        email=email,
        name=admin_name.strip(),
        role=UserRole.ADMIN.value,
        organization_id=organization.id,
    )
    admin.set_password(password)
    db.session.add(admin)
    db.session.flush()

    organization.created_by_id = admin.id
    seed_default_statuses(organization.id)
    return organization, admin


def _demo_user(organization: Organization, email: str, name: str, role: str) -> User:
    user = User(email=email, name=name, role=role, organization_id=organization.id)
    user.set_password(DEMO_PASSWORD)
    db.session.add(user)
    return user


def seed_demo_data() -> Organization:
    """
    Create a demo tenant: admin, project manager, two members, a project
    with a board, three tasks and a submitted activity.
    """
    organization, admin = create_organization_with_admin(
        DEMO_ORGANIZATION, "admin@demo.test", "Demo Admin", DEMO_PASSWORD
    )
    manager = _demo_user(organization, "pm@demo.test", "Pat Manager", UserRole.PROJECT_MANAGER.value)
    alice = _demo_user(organization, "alice@demo.test", "Alice Member", UserRole.MEMBER.value)
    bob = _demo_user(organization, "bob@demo.test", "Bob Member", UserRole.MEMBER.value)
    db.session.flush()

    project = Project(
        name="Website Relaunch",
        description="Demo project",
        organization_id=organization.id,
        owner_id=manager.id,
    )
    project.memberships = [
        ProjectMember(user_id=manager.id, role="owner"),
        ProjectMember(user_id=alice.id),
        ProjectMember(user_id=bob.id),
    ]
    db.session.add(project)
    db.session.flush()

    board = Board(
        name="Website Relaunch Board",
        project_id=project.id,
        organization_id=organization.id,
        owner_id=manager.id,
    )
    db.session.add(board)
    db.session.flush()

    now = utcnow()
    samples = (
        ("Draft sitemap", alice, TODO, TaskPriority.HIGH, DEFAULT_SECTION, 0),
        ("Build landing page", alice, IN_PROGRESS, TaskPriority.URGENT, DEFAULT_SECTION, 1),
        ("Collect brand assets", bob, DONE, TaskPriority.LOW, COMPLETED_SECTION, 0),
    )
    for offset, (title, assignee, status, priority, section, position) in enumerate(samples):
        db.session.add(
            Task(
                board_id=board.id,
                project_id=project.id,
                organization_id=organization.id,
                created_by_id=manager.id,
                assignee_id=assignee.id,
                title=title,
                status=status,
                priority=priority.value,
                due_date=now + timedelta(days=7 * (offset + 1)),
                section=section,
                position=position,
            )
        )

    activity = Activity(
        ticket_number=generate_ticket_number(),
        title="Kick-off workshop",
        description="Half-day workshop with stakeholders",
        start_date=now,
        end_date=now + timedelta(hours=4),
        status=DONE,
        approval_state=ApprovalState.SUBMITTED.value,
        priority=ActivityPriority.MEDIUM.value,
        project_id=project.id,
        organization_id=organization.id,
        created_by_id=alice.id,
    )
    activity.assignees = [alice, bob]
    db.session.add(activity)
    logger.info("Demo data seeded for organization %s (admin %s)", organization.id, admin.email)
    return organization


def register_commands(app: Flask) -> None:
    """Attach the tracker commands to ``app.cli``."""

    @app.cli.command("init-db")
    def init_db() -> None:
        """Create all database tables."""
        db.create_all()
        click.echo(f"Database initialized: {current_app.config['SQLALCHEMY_DATABASE_URI']}")

    @app.cli.command("create-organization")
    @click.argument("name")
    @click.argument("email")
    @click.argument("admin_name")
    @click.option("--password", default=None, help="Admin password (generated when omitted).")
    def create_organization(name: str, email: str, admin_name: str, password: str | None) -> None:
        """
        Create an organization together with its admin user.

        Without ``--password`` a one-time password is generated, printed
        once and must be changed on first sign-in.
        """
        temporary_password = None if password else generate_temporary_password()
        organization, admin = create_organization_with_admin(
            name, email, admin_name, password or temporary_password
        )
        admin.must_change_password = temporary_password is not None
        db.session.commit()
        click.echo(f"Created organization {organization.id} ({organization.name}) with admin {admin.email}")
        if temporary_password is not None:
            click.echo(f"Temporary password: {temporary_password}")

    @app.cli.command("seed-demo")
    def seed_demo() -> None:
        """Create a demo organization with users, a project, tasks and an activity."""
        if db.session.scalar(select(Organization).where(Organization.name == DEMO_ORGANIZATION)):
            click.echo("Demo data already present, skipping")
            return
        organization = seed_demo_data()
        db.session.commit()
        click.echo(f"Seeded demo organization {organization.id}; password for all users: {DEMO_PASSWORD}")

    @app.cli.command("purge-audit-logs")
    @click.option(
        "--days",
        type=click.IntRange(min=1),
        default=None,
        help="Retention in days (defaults to AUDIT_RETENTION_DAYS).",
    )
    def purge_audit_logs_command(days: int | None) -> None:
        """Delete audit entries older than the retention period."""
        retention = days or current_app.config["AUDIT_RETENTION_DAYS"]
        removed = purge_audit_logs(retention)
        db.session.commit()
        click.echo(f"Removed {removed} audit entries older than {retention} days")
