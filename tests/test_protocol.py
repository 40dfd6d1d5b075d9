"""Tests for wire contracts shared by broker and poller."""

import pytest

from feedback_relay.protocol import (
    BrokerSnapshot,
    FeedbackRequest,
    FeedbackResponse,
    ImageAttachment,
    generate_request_id,
    mime_type_for,
)


# ===== MIME types =====

class TestMimeTypes:
    """Tests for filename-derived image MIME types."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("shot.png", "image/png"),
            ("photo.JPG", "image/jpeg"),
            ("photo.jpeg", "image/jpeg"),
            ("anim.gif", "image/gif"),
            ("pic.webp", "image/webp"),
            ("scan.bmp", "image/png"),
            ("noextension", "image/png"),
        ],
    )
    def test_mime_type_for(self, filename, expected):
        assert mime_type_for(filename) == expected

    def test_attachment_ignores_declared_type(self):
        """The filename decides, not the form's declared type."""
        image = ImageAttachment(name="a.gif", base64_payload="R0lG", mime_type_hint="image/png")
        assert image.mime_type == "image/gif"


# ===== Requests =====

class TestFeedbackRequest:
    """Tests for FeedbackRequest serialization."""

    def test_ids_are_unique(self):
        ids = {generate_request_id() for _ in range(200)}
        assert len(ids) == 200
        assert all(i.startswith("req_") for i in ids)

    def test_to_dict_uses_wire_names(self):
        request = FeedbackRequest(
            id="req_1",
            summary="done",
            project_directory="/p",
            timeout_seconds=60,
            created_at=1000,
        )
        assert request.to_dict() == {
            "id": "req_1",
            "summary": "done",
            "projectDirectory": "/p",
            "timeoutSeconds": 60,
            "createdAt": 1000,
        }

    def test_from_dict_accepts_legacy_names(self):
        request = FeedbackRequest.from_dict(
            {"id": "req_2", "summary": "s", "projectDir": "/q", "timeout": 30, "timestamp": 42}
        )
        assert request.project_directory == "/q"
        assert request.timeout_seconds == 30
        assert request.created_at == 42


# ===== Responses =====

class TestFeedbackResponse:
    """Tests for parsing the feedback object of a submit body."""

    def test_from_dict_canonical(self):
        response = FeedbackResponse.from_dict(
            "req_1",
            {
                "text": "looks good",
                "images": [{"name": "a.png", "base64Payload": "aGk=", "size": 2}],
                "attachedPaths": ["/p/a.py"],
                "originDirectory": "/p",
            },
        )
        assert response.request_id == "req_1"
        assert response.text == "looks good"
        assert response.images[0].base64_payload == "aGk="
        assert response.attached_paths == ["/p/a.py"]
        assert response.origin_directory == "/p"

    def test_from_dict_legacy_names(self):
        response = FeedbackResponse.from_dict(
            "req_1",
            {
                "interactive_feedback": "ok",
                "images": [{"name": "b.jpg", "data": "aGk="}],
                "attachedFiles": ["x.txt"],
                "project_directory": "/legacy",
            },
        )
        assert response.text == "ok"
        assert response.images[0].mime_type == "image/jpeg"
        assert response.attached_paths == ["x.txt"]
        assert response.origin_directory == "/legacy"

    def test_from_dict_empty_defaults(self):
        response = FeedbackResponse.from_dict("req_1", {})
        assert response.text == ""
        assert response.images == []
        assert response.attached_paths == []
        assert response.origin_directory is None

    @pytest.mark.parametrize(
        "data",
        [
            "not an object",
            {"text": 42},
            {"images": "nope"},
            {"attachedPaths": {"a": 1}},
            {"images": ["not an object"]},
            {"images": [{"name": "a.png"}]},
        ],
    )
    def test_from_dict_rejects_bad_shapes(self, data):
        with pytest.raises(ValueError):
            FeedbackResponse.from_dict("req_1", data)

    def test_submit_body(self):
        response = FeedbackResponse(request_id="req_9", text="hi", attached_paths=["a"])
        body = response.to_submit_body()
        assert body["requestId"] == "req_9"
        assert body["feedback"]["text"] == "hi"
        assert body["feedback"]["attachedPaths"] == ["a"]


# ===== Snapshots =====

class TestBrokerSnapshot:
    """Tests for poll response parsing."""

    def test_rich_shape(self):
        snapshot = BrokerSnapshot.from_dict(
            5679,
            {
                "request": {
                    "id": "req_1",
                    "summary": "s",
                    "projectDirectory": "/p",
                    "timeoutSeconds": 10,
                    "createdAt": 5,
                },
                "ownerWorkspace": "/p",
                "startTime": 1234,
            },
        )
        assert snapshot.port == 5679
        assert snapshot.request.id == "req_1"
        assert snapshot.owner_workspace == "/p"
        assert snapshot.start_time == 1234
        assert snapshot.legacy is False

    def test_rich_shape_without_request(self):
        snapshot = BrokerSnapshot.from_dict(1, {"request": None, "ownerWorkspace": None, "startTime": 7})
        assert snapshot.request is None
        assert snapshot.legacy is False

    def test_legacy_bare_request(self):
        snapshot = BrokerSnapshot.from_dict(
            1, {"id": "req_old", "summary": "s", "projectDir": "/p", "timeout": 5, "timestamp": 9}
        )
        assert snapshot.legacy is True
        assert snapshot.request.id == "req_old"
        assert snapshot.owner_workspace is None
        assert snapshot.start_time == 0

    def test_legacy_null(self):
        snapshot = BrokerSnapshot.from_dict(1, None)
        assert snapshot.legacy is True
        assert snapshot.request is None
