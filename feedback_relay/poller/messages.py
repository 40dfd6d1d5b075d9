"""Messages exchanged between a poller and the feedback form it drives.

Each direction is a tagged union keyed on `type`. Inbound messages are
validated here before the poller acts on them; outbound messages are
serialized with `to_dict()` into the camelCase shape the form expects.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from feedback_relay.protocol import FeedbackRequest, FeedbackResponse


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================
# Form -> Poller
# ============================================


class SubmitFeedbackPayload(BaseModel):
    """The form's answer; fields other than requestId are parsed by FeedbackResponse."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    request_id: str = Field(alias="requestId", min_length=1)

    def to_response(self) -> FeedbackResponse:
        return FeedbackResponse.from_dict(self.request_id, dict(self.model_extra or {}))


class ReadyMessage(_Message):
    type: Literal["ready"] = "ready"


class SubmitFeedbackMessage(_Message):
    type: Literal["submitFeedback"] = "submitFeedback"
    payload: SubmitFeedbackPayload


class CheckServerMessage(_Message):
    type: Literal["checkServer"] = "checkServer"


class SelectFileMessage(_Message):
    type: Literal["selectFile"] = "selectFile"


class SelectFolderMessage(_Message):
    type: Literal["selectFolder"] = "selectFolder"


FormMessage = Annotated[
    Union[
        ReadyMessage,
        SubmitFeedbackMessage,
        CheckServerMessage,
        SelectFileMessage,
        SelectFolderMessage,
    ],
    Field(discriminator="type"),
]

_form_message_adapter: TypeAdapter = TypeAdapter(FormMessage)


def parse_form_message(data: Any) -> FormMessage:
    """Validate a raw message posted by the form.

    Raises:
        pydantic.ValidationError: For unknown types or malformed payloads
    """
    return _form_message_adapter.validate_python(data)


# ============================================
# Poller -> Form
# ============================================


class RequestPayload(_Message):
    request_id: str = Field(alias="requestId")
    summary: str
    project_dir: str = Field(alias="projectDir")
    timeout: float
    timestamp: int


class ShowFeedbackRequest(_Message):
    type: Literal["showFeedbackRequest"] = "showFeedbackRequest"
    payload: RequestPayload

    @classmethod
    def for_request(cls, request: FeedbackRequest) -> "ShowFeedbackRequest":
        return cls(
            payload=RequestPayload(
                request_id=request.id,
                summary=request.summary,
                project_dir=request.project_directory,
                timeout=request.timeout_seconds,
                timestamp=request.created_at,
            )
        )


class ShowWaiting(_Message):
    type: Literal["showWaiting"] = "showWaiting"


class ServerStatusPayload(_Message):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    connected: bool
    port: Optional[int] = None


class ServerStatus(_Message):
    type: Literal["serverStatus"] = "serverStatus"
    payload: ServerStatusPayload


class DebugInfoPayload(_Message):
    port_range: str = Field(alias="portRange")
    workspace_path: str = Field(alias="workspacePath")
    active_port: Optional[int] = Field(default=None, alias="activePort")
    connected_ports: list[int] = Field(default_factory=list, alias="connectedPorts")
    last_status: str = Field(alias="lastStatus")


class UpdateDebugInfo(_Message):
    type: Literal["updateDebugInfo"] = "updateDebugInfo"
    payload: DebugInfoPayload


class FilesSelectedPayload(_Message):
    paths: list[str]
    is_folder: bool = Field(alias="isFolder")


class FilesSelected(_Message):
    type: Literal["filesSelected"] = "filesSelected"
    payload: FilesSelectedPayload


PollerMessage = Union[
    ShowFeedbackRequest,
    ShowWaiting,
    ServerStatus,
    UpdateDebugInfo,
    FilesSelected,
]
