"""Wire contracts shared by the broker and the poller.

All payloads travel as JSON over the loopback HTTP side-channel. Field
names on the wire are camelCase; the dataclasses below use snake_case and
convert with `to_dict` / `from_dict`.

Older editor forms post answers with a different vocabulary
(`interactive_feedback`, `attachedFiles`, `project_directory`, image `data`)
and older brokers answer polls with the bare request object instead of a
snapshot. `from_dict` accepts both.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from feedback_relay.core.timing import now_ms

DEFAULT_SUMMARY = "I have completed the task you requested."

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
}
FALLBACK_MIME_TYPE = "image/png"


def mime_type_for(filename: str) -> str:
    """Derive an image MIME type from a filename extension."""
    if "." not in filename:
        return FALLBACK_MIME_TYPE
    ext = filename.rsplit(".", 1)[-1].lower()
    return MIME_TYPES.get(ext, FALLBACK_MIME_TYPE)


def generate_request_id() -> str:
    """Create an opaque, unique request id."""
    return f"req_{now_ms()}_{uuid.uuid4().hex[:9]}"


def _pick(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first key present in data (canonical name first)."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


@dataclass
class FeedbackRequest:
    """One outstanding ask-the-human operation."""

    id: str
    summary: str
    project_directory: str
    timeout_seconds: float
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Convert to wire format."""
        return {
            "id": self.id,
            "summary": self.summary,
            "projectDirectory": self.project_directory,
            "timeoutSeconds": self.timeout_seconds,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedbackRequest":
        """Parse from wire format."""
        return cls(
            id=str(data["id"]),
            summary=str(_pick(data, "summary", default="")),
            project_directory=str(
                _pick(data, "projectDirectory", "projectDir", default=".")
            ),
            timeout_seconds=float(_pick(data, "timeoutSeconds", "timeout", default=0)),
            created_at=int(_pick(data, "createdAt", "timestamp", default=0)),
        )


@dataclass
class ImageAttachment:
    """An image pasted or uploaded into the feedback form."""

    name: str
    base64_payload: str
    size: int = 0
    mime_type_hint: Optional[str] = None

    @property
    def mime_type(self) -> str:
        """MIME type used for the tool result; derived from the filename."""
        return mime_type_for(self.name)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "base64Payload": self.base64_payload,
            "size": self.size,
        }
        if self.mime_type_hint:
            result["mimeTypeHint"] = self.mime_type_hint
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageAttachment":
        payload = _pick(data, "base64Payload", "data")
        if not isinstance(payload, str):
            raise ValueError("image payload must be a base64 string")
        return cls(
            name=str(_pick(data, "name", default="image.png")),
            base64_payload=payload,
            size=int(_pick(data, "size", default=0)),
            mime_type_hint=_pick(data, "mimeTypeHint", "mimeType"),
        )


@dataclass
class FeedbackResponse:
    """The human's answer to a FeedbackRequest."""

    request_id: str
    text: str = ""
    images: list[ImageAttachment] = field(default_factory=list)
    attached_paths: list[str] = field(default_factory=list)
    origin_directory: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the `feedback` object of a submit body."""
        return {
            "text": self.text,
            "images": [image.to_dict() for image in self.images],
            "attachedPaths": list(self.attached_paths),
            "originDirectory": self.origin_directory,
        }

    def to_submit_body(self) -> dict[str, Any]:
        """Full POST /api/feedback/submit body."""
        return {"requestId": self.request_id, "feedback": self.to_dict()}

    @classmethod
    def from_dict(cls, request_id: str, data: dict[str, Any]) -> "FeedbackResponse":
        """Parse the `feedback` object of a submit body.

        Raises:
            ValueError: If a field has the wrong shape
        """
        if not isinstance(data, dict):
            raise ValueError("feedback must be an object")

        text = _pick(data, "text", "interactive_feedback", default="")
        if not isinstance(text, str):
            raise ValueError("feedback text must be a string")

        raw_images = _pick(data, "images", default=[])
        raw_paths = _pick(data, "attachedPaths", "attachedFiles", default=[])
        if not isinstance(raw_images, list) or not isinstance(raw_paths, list):
            raise ValueError("images and attachedPaths must be lists")

        images = []
        for raw in raw_images:
            if not isinstance(raw, dict):
                raise ValueError("each image must be an object")
            images.append(ImageAttachment.from_dict(raw))

        origin = _pick(data, "originDirectory", "project_directory")
        return cls(
            request_id=request_id,
            text=text,
            images=images,
            attached_paths=[str(p) for p in raw_paths],
            origin_directory=str(origin) if origin is not None else None,
        )


@dataclass
class BrokerSnapshot:
    """What one broker reported to a poll."""

    port: int
    request: Optional[FeedbackRequest]
    owner_workspace: Optional[str]
    start_time: int
    legacy: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the GET /api/feedback/current response body."""
        return {
            "request": self.request.to_dict() if self.request else None,
            "ownerWorkspace": self.owner_workspace,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, port: int, data: Any) -> "BrokerSnapshot":
        """Parse a poll response, duck-typing the legacy bare-request shape."""
        if isinstance(data, dict) and "startTime" in data:
            raw_request = data.get("request")
            return cls(
                port=port,
                request=FeedbackRequest.from_dict(raw_request) if raw_request else None,
                owner_workspace=data.get("ownerWorkspace"),
                start_time=int(data.get("startTime") or 0),
            )

        # Legacy brokers return the request itself (or null) and never claim a workspace
        request = FeedbackRequest.from_dict(data) if isinstance(data, dict) and "id" in data else None
        return cls(
            port=port,
            request=request,
            owner_workspace=None,
            start_time=0,
            legacy=True,
        )
