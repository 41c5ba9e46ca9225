"""
Kernel wire protocol: request envelopes and typed inbound messages.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from notebook_remote.errors import ExecutionError, ProtocolError


PROTOCOL_VERSION = "5.2"
DEFAULT_USERNAME = "notebook-remote"


def new_message_id() -> str:
    return uuid.uuid4().hex


def build_execute_request(
    code: str,
    session: str,
    username: str = DEFAULT_USERNAME,
    msg_id: str = "",
) -> dict:
    """
    Build an ``execute_request`` envelope for the shell channel.

    Args:
        code: Source code to run
        session: Client session id placed in the header
        username: Username placed in the header
        msg_id: Message id; a fresh one is generated when empty

    Returns:
        The JSON-serializable message dict
    """
    return {
        "header": {
            "msg_id": msg_id or new_message_id(),
            "username": username,
            "session": session,
            "msg_type": "execute_request",
            "version": PROTOCOL_VERSION,
            "date": datetime.now(timezone.utc).isoformat(),
        },
        "parent_header": {},
        "metadata": {},
        "content": {
            "code": code,
            "silent": False,
            "store_history": True,
            "user_expressions": {},
            "allow_stdin": False,
        },
        "channel": "shell",
    }


@dataclass(frozen=True)
class StreamMessage:
    parent_id: str
    name: str
    text: str


@dataclass(frozen=True)
class ExecuteResultMessage:
    parent_id: str
    data: dict[str, Any] = field(default_factory=dict)
    execution_count: int = 0


@dataclass(frozen=True)
class DisplayDataMessage:
    parent_id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErrorMessage:
    parent_id: str
    ename: str
    evalue: str
    traceback: tuple[str, ...] = ()

    def to_exception(self) -> ExecutionError:
        return ExecutionError(self.ename, self.evalue, list(self.traceback))


@dataclass(frozen=True)
class StatusMessage:
    parent_id: str
    execution_state: str

    @property
    def is_idle(self) -> bool:
        return self.execution_state == "idle"


@dataclass(frozen=True)
class OtherMessage:
    """Any message type the client does not act on."""
    parent_id: str
    msg_type: str


KernelMessage = Union[
    StreamMessage,
    ExecuteResultMessage,
    DisplayDataMessage,
    ErrorMessage,
    StatusMessage,
    OtherMessage,
]


def parse_message(raw: Union[str, bytes, dict]) -> KernelMessage:
    """
    Decode one inbound frame into its message variant.

    Raises:
        ProtocolError: if the frame is not a JSON object with a header
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON frame: {e}") from e
    if not isinstance(raw, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(raw).__name__}")

    header = raw.get("header") or {}
    msg_type = header.get("msg_type") or raw.get("msg_type")
    if not msg_type:
        raise ProtocolError("Message has no msg_type")

    parent_id = (raw.get("parent_header") or {}).get("msg_id", "")
    content = raw.get("content") or {}

    if msg_type == "stream":
        return StreamMessage(parent_id, content.get("name", "stdout"), content.get("text", ""))
    if msg_type == "execute_result":
        return ExecuteResultMessage(
            parent_id, content.get("data") or {}, content.get("execution_count") or 0
        )
    if msg_type == "display_data":
        return DisplayDataMessage(parent_id, content.get("data") or {})
    if msg_type == "error":
        return ErrorMessage(
            parent_id,
            content.get("ename", ""),
            content.get("evalue", ""),
            tuple(content.get("traceback") or ()),
        )
    if msg_type == "status":
        return StatusMessage(parent_id, content.get("execution_state", ""))
    return OtherMessage(parent_id, msg_type)


def format_mime_bundle(data: dict[str, Any]) -> str:
    """
    Render the displayable parts of a MIME bundle as text.

    Plain text and HTML are appended as-is; a base64 PNG becomes an
    ``<img>`` element with a data URI.
    """
    text = ""
    if data.get("text/plain"):
        text += f"{data['text/plain']}\n"
    if data.get("text/html"):
        text += f"{data['text/html']}\n"
    if data.get("image/png"):
        text += f'<img src="data:image/png;base64,{data["image/png"]}" />\n'
    return text


def format_error(ename: str, evalue: str, traceback: Union[list[str], tuple[str, ...]] = ()) -> str:
    return f"Error: {ename}\n{evalue}\n" + "\n".join(traceback)
