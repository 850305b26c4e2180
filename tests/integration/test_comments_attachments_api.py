"""
Integration tests for task comments and task attachments.

Key SDET Concepts Demonstrated:
- Author-only edits versus manager moderation
- Mention extraction filtered by tenant
- Multipart uploads with size and extension limits
- Files on disk kept in step with committed rows
"""

from __future__ import annotations

import hashlib
import io
from pathlib import Path

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from tracker_app.models import ProjectMember, TaskAttachment, TaskComment
from tracker_app.routes.comments import extract_mentions
from tracker_app.routes.common import commit_with_stored_file
from tracker_app.workflow import ChangeType

pytestmark = pytest.mark.integration

PDF_BYTES = b"%PDF-1.4\n" + b"0" * 128


def _post_comment(client, task_id, headers, body, **extra):
    return client.post(
        f"/api/tasks/{task_id}/comments", headers=headers, json={"body": body, **extra}
    )


def _upload(client, task_id, headers, content=PDF_BYTES, name="brief.pdf", description=None):
    data = {"file": (io.BytesIO(content), name)}
    if description:
        data["description"] = description
    return client.post(
        f"/api/tasks/{task_id}/attachments",
        headers={"Authorization": headers["Authorization"]},
        data=data,
        content_type="multipart/form-data",
    )


class TestMentionParsing:
    def test_extract_mentions(self):
        body = "Ping @[Mia Member](4) and @[Bad](x) plus @[Pat](12)"
        assert extract_mentions(body) == [4, 12]


class TestComments:
    def test_create_comment_records_history(self, client, db_session, member_task, member_headers):
        # Act
        response = _post_comment(client, member_task.id, member_headers, "  Started the outline  ")

        # Assert
        assert response.status_code == 201
        comment = response.get_json()["comment"]
        assert comment["body"] == "Started the outline"
        assert comment["is_pinned"] is False
        history = client.get(f"/api/tasks/{member_task.id}/history", headers=member_headers)
        assert history.get_json()["history"][0]["change_type"] == ChangeType.COMMENTED.value

    def test_mentions_outside_tenant_are_dropped(
        self, client, db_session, member_task, member, outsider, manager_headers
    ):
        """Test that only users of the organization are kept as mentions."""
        # Act
        response = _post_comment(
            client,
            member_task.id,
            manager_headers,
            f"@[{member.name}]({member.id}) please check",
            mentions=[outsider.id],
        )

        # Assert
        assert response.get_json()["comment"]["mentions"] == [member.id]

    def test_blank_body_returns_400(self, client, db_session, member_task, member_headers):
        response = _post_comment(client, member_task.id, member_headers, "   ")
        assert response.status_code == 400

    def test_reply_to_unknown_parent_returns_400(self, client, db_session, member_task, member_headers):
        response = _post_comment(
            client, member_task.id, member_headers, "Reply", parent_comment_id=999
        )
        assert response.status_code == 400

    def test_pinned_comments_listed_first(self, client, db_session, member_task, manager_headers):
        # Arrange
        first = _post_comment(client, member_task.id, manager_headers, "First").get_json()["comment"]
        _post_comment(client, member_task.id, manager_headers, "Second")
        pin = client.post(
            f"/api/tasks/{member_task.id}/comments/{first['id']}/pin", headers=manager_headers
        )

        # Act
        response = client.get(f"/api/tasks/{member_task.id}/comments", headers=manager_headers)

        # Assert
        assert pin.get_json()["comment"]["is_pinned"] is True
        bodies = [c["body"] for c in response.get_json()["comments"]]
        assert bodies == ["First", "Second"]

    def test_assignee_cannot_pin(self, client, db_session, member_task, member_headers):
        comment = _post_comment(client, member_task.id, member_headers, "Note").get_json()["comment"]
        response = client.post(
            f"/api/tasks/{member_task.id}/comments/{comment['id']}/pin", headers=member_headers
        )
        assert response.status_code == 403

    def test_only_author_can_edit(self, client, db_session, member_task, member_headers, manager_headers):
        # Arrange
        comment = _post_comment(client, member_task.id, member_headers, "Draft").get_json()["comment"]
        url = f"/api/tasks/{member_task.id}/comments/{comment['id']}"

        # Act
        by_manager = client.put(url, headers=manager_headers, json={"body": "Overwritten"})
        by_author = client.put(url, headers=member_headers, json={"body": "Final"})

        # Assert
        assert by_manager.status_code == 403
        edited = by_author.get_json()["comment"]
        assert edited["body"] == "Final"
        assert edited["is_edited"] is True
        assert edited["last_edited_at"] is not None

    def test_manager_delete_removes_replies(
        self, client, db_session, member_task, member_headers, manager_headers
    ):
        # Arrange
        parent = _post_comment(client, member_task.id, member_headers, "Question").get_json()["comment"]
        _post_comment(
            client, member_task.id, manager_headers, "Answer", parent_comment_id=parent["id"]
        )

        # Act
        response = client.delete(
            f"/api/tasks/{member_task.id}/comments/{parent['id']}", headers=manager_headers
        )

        # Assert
        assert response.status_code == 200
        remaining = db_session.session.scalars(
            select(TaskComment).where(TaskComment.task_id == member_task.id)
        ).all()
        assert remaining == []

    def test_delete_removes_whole_thread_only(
        self, client, db_session, member_task, member_headers, manager_headers
    ):
        """Test that replies at every depth go with their root, and nothing else does."""
        # Arrange
        root = _post_comment(client, member_task.id, member_headers, "Root").get_json()["comment"]
        reply = _post_comment(
            client, member_task.id, manager_headers, "Reply", parent_comment_id=root["id"]
        ).get_json()["comment"]
        _post_comment(
            client, member_task.id, member_headers, "Nested", parent_comment_id=reply["id"]
        )
        unrelated = _post_comment(client, member_task.id, member_headers, "Separate").get_json()[
            "comment"
        ]

        # Act
        response = client.delete(
            f"/api/tasks/{member_task.id}/comments/{root['id']}", headers=member_headers
        )

        # Assert
        assert response.status_code == 200
        remaining = db_session.session.scalars(
            select(TaskComment.id).where(TaskComment.task_id == member_task.id)
        ).all()
        assert remaining == [unrelated["id"]]

    def test_reactions_toggle_per_user(
        self, client, db_session, member_task, member, manager, member_headers, manager_headers
    ):
        # Arrange
        comment = _post_comment(client, member_task.id, member_headers, "Done?").get_json()["comment"]
        url = f"/api/tasks/{member_task.id}/comments/{comment['id']}/reactions"

        # Act
        client.post(url, headers=member_headers, json={"emoji": "👍"})
        client.post(url, headers=member_headers, json={"emoji": "👍"})
        both = client.post(url, headers=manager_headers, json={"emoji": "👍"})
        removed = client.delete(url, headers=member_headers, json={"emoji": "👍"})

        # Assert
        assert both.get_json()["comment"]["reactions"] == {"👍": [member.id, manager.id]}
        assert removed.get_json()["comment"]["reactions"] == {"👍": [manager.id]}

    def test_reaction_requires_emoji(self, client, db_session, member_task, member_headers):
        comment = _post_comment(client, member_task.id, member_headers, "Hi").get_json()["comment"]
        response = client.post(
            f"/api/tasks/{member_task.id}/comments/{comment['id']}/reactions",
            headers=member_headers,
            json={},
        )
        assert response.status_code == 400

    def test_comments_hidden_from_other_tenants(
        self, client, db_session, member_task, outsider_headers
    ):
        response = client.get(f"/api/tasks/{member_task.id}/comments", headers=outsider_headers)
        assert response.status_code == 404


class TestAttachments:
    def test_upload_stores_file_and_hash(self, app, client, db_session, member_task, member_headers):
        """Test that metadata is recorded and the bytes land on disk."""
        # Act
        response = _upload(client, member_task.id, member_headers, description="Brief draft")

        # Assert
        assert response.status_code == 201
        attachment = response.get_json()["attachment"]
        assert attachment["file_name"] == "brief.pdf"
        assert attachment["file_size"] == len(PDF_BYTES)
        assert attachment["file_hash"] == hashlib.sha256(PDF_BYTES).hexdigest()
        assert attachment["description"] == "Brief draft"
        assert attachment["is_document"] is True
        stored = db_session.session.get(TaskAttachment, attachment["id"])
        assert stored.storage_path(app.config["UPLOAD_FOLDER"]).read_bytes() == PDF_BYTES

    def test_upload_without_file_returns_400(self, client, db_session, member_task, member_headers):
        response = client.post(
            f"/api/tasks/{member_task.id}/attachments",
            headers={"Authorization": member_headers["Authorization"]},
            data={},
            content_type="multipart/form-data",
        )
        assert response.status_code == 400

    def test_disallowed_extension_returns_400(self, client, db_session, member_task, member_headers):
        response = _upload(client, member_task.id, member_headers, content=b"#!/bin/sh", name="run.sh")
        assert response.status_code == 400

    def test_oversized_file_returns_413(
        self, app, client, db_session, member_task, member_headers, monkeypatch
    ):
        monkeypatch.setitem(app.config, "MAX_ATTACHMENT_BYTES", 32)
        response = _upload(client, member_task.id, member_headers)
        assert response.status_code == 413

    def test_download_counts(self, client, db_session, member_task, member_headers):
        # Arrange
        attachment = _upload(client, member_task.id, member_headers).get_json()["attachment"]

        # Act
        download = client.get(attachment["download_url"], headers=member_headers)
        listing = client.get(f"/api/tasks/{member_task.id}/attachments", headers=member_headers)

        # Assert
        assert download.status_code == 200
        assert download.data == PDF_BYTES
        assert listing.get_json()["attachments"][0]["download_count"] == 1

    def test_delete_by_uploader_removes_file(self, app, client, db_session, member_task, member_headers):
        # Arrange
        attachment = _upload(client, member_task.id, member_headers).get_json()["attachment"]
        path = db_session.session.get(TaskAttachment, attachment["id"]).storage_path(
            app.config["UPLOAD_FOLDER"]
        )

        # Act
        response = client.delete(
            f"/api/tasks/{member_task.id}/attachments/{attachment['id']}", headers=member_headers
        )

        # Assert
        assert response.status_code == 200
        assert not Path(path).exists()

    def test_project_member_cannot_delete_others_upload(
        self, client, db_session, member_task, member_headers, project, other_member, headers_for
    ):
        # Arrange
        project.memberships.append(ProjectMember(user_id=other_member.id))
        db_session.session.commit()
        attachment = _upload(client, member_task.id, member_headers).get_json()["attachment"]

        # Act
        response = client.delete(
            f"/api/tasks/{member_task.id}/attachments/{attachment['id']}",
            headers=headers_for(other_member),
        )

        # Assert
        assert response.status_code == 403


def _failing_commit():
    raise OperationalError("COMMIT", {}, Exception("database is locked"))


class TestStoredFiles:
    """Files written for a row must not outlive a failed commit."""

    def test_file_is_removed_when_commit_fails(self, db_session, tmp_path, monkeypatch):
        # Arrange
        path = tmp_path / "tasks" / "7" / "stored.pdf"
        monkeypatch.setattr(db_session.session, "commit", _failing_commit)

        # Act
        with pytest.raises(SQLAlchemyError):
            commit_with_stored_file(path, PDF_BYTES)

        # Assert
        assert not path.exists()

    def test_file_is_kept_after_commit(self, db_session, tmp_path):
        path = tmp_path / "logos" / "org.png"
        commit_with_stored_file(path, PDF_BYTES)
        assert path.read_bytes() == PDF_BYTES

    def test_upload_leaves_no_file_when_commit_fails(
        self, app, client, db_session, member_task, member_headers, monkeypatch
    ):
        """Test that an upload whose row cannot be stored leaves the upload folder untouched."""
        # Arrange
        task_dir = Path(app.config["UPLOAD_FOLDER"]) / "tasks" / str(member_task.id)
        monkeypatch.setattr(db_session.session, "commit", _failing_commit)

        # Act
        with pytest.raises(SQLAlchemyError):
            _upload(client, member_task.id, member_headers)

        # Assert
        assert not task_dir.exists() or list(task_dir.iterdir()) == []

    def test_deleting_task_removes_its_files(
        self, app, client, db_session, member_task, member_headers, manager_headers
    ):
        # Arrange
        _upload(client, member_task.id, member_headers)
        task_dir = Path(app.config["UPLOAD_FOLDER"]) / "tasks" / str(member_task.id)
        assert list(task_dir.iterdir())

        # Act
        response = client.delete(f"/api/tasks/{member_task.id}", headers=manager_headers)

        # Assert
        assert response.status_code == 200
        assert not task_dir.exists()
