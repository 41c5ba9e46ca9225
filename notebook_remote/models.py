"""
Models: servers, kernels, sessions and code cells.
"""

import re
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence
from urllib.parse import urlencode

from pydantic import BaseModel, ConfigDict, Field

from notebook_remote.errors import ExecutionError


INVALID_KERNEL_NAMES = ("", "none")
PREFERRED_LANGUAGE = "python"

_PROTOCOL_RE = re.compile(r"^[a-z]+://", re.IGNORECASE)


def url_without_protocol(url: str) -> str:
    """Strip a leading ``http://`` style scheme from a host or URL."""
    return _PROTOCOL_RE.sub("", url).rstrip("/")


class ServerConfig(BaseModel):
    """A kernel server, identified by host and port."""
    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    token: str = ""

    @property
    def key(self) -> str:
        """Lookup key in ``host:port`` form, without protocol."""
        return f"{url_without_protocol(self.host)}:{self.port}"

    @property
    def is_secure(self) -> bool:
        return self.host.lower().startswith("https://")

    @property
    def base_url(self) -> str:
        scheme = "https" if self.is_secure else "http"
        return f"{scheme}://{self.key}"

    @property
    def ws_base_url(self) -> str:
        scheme = "wss" if self.is_secure else "ws"
        return f"{scheme}://{self.key}"

    def same_server(self, other: "ServerConfig") -> bool:
        """Whether both configs point at the same host and port."""
        return self.key == other.key

    def api_url(self, endpoint: str) -> str:
        """REST endpoint URL (token passed separately as a query param)."""
        return f"{self.base_url}/api{endpoint}"

    def channels_url(self, kernel_id: str) -> str:
        """WebSocket URL of a kernel's channels endpoint."""
        url = f"{self.ws_base_url}/api/kernels/{kernel_id}/channels"
        if self.token:
            url = f"{url}?{urlencode({'token': self.token})}"
        return url

    def query_params(self) -> dict[str, str]:
        return {"token": self.token} if self.token else {}

    def __str__(self) -> str:
        return self.key


class KernelSpec(BaseModel):
    """A kernel type a server can launch."""
    model_config = ConfigDict(frozen=True)

    name: str
    language: str = ""
    display_name: str = ""

    def is_preferred(self) -> bool:
        return (
            PREFERRED_LANGUAGE in self.language.lower()
            or PREFERRED_LANGUAGE in self.name.lower()
        )


class RunningKernel(BaseModel):
    """A kernel instance currently alive on a server."""
    id: str
    name: str = ""
    execution_state: str = ""


def preferred_kernel_spec(specs: Sequence[KernelSpec]) -> Optional[KernelSpec]:
    """Pick the first Python-ish kernel type, else the first one listed."""
    for spec in specs:
        if spec.is_preferred():
            return spec
    return specs[0] if specs else None


def is_valid_kernel_name(name: Optional[str]) -> bool:
    return bool(name) and name not in INVALID_KERNEL_NAMES


class CodeCell(BaseModel):
    """An executable code cell as seen by the execution subsystem."""
    id: str = Field(default_factory=lambda: f"cell_{uuid.uuid4().hex}")
    code: str = ""
    kernel_name: str = ""
    session_id: str = ""
    server: Optional[ServerConfig] = None
    output: str = ""
    is_executing: bool = False
    has_error: bool = False
    error: Optional[str] = None
    is_published: bool = False
    is_pipeline_cell: bool = False
    generation: int = 0

    @property
    def is_excluded(self) -> bool:
        """Published and pipeline cells never join the shared session."""
        return self.is_published or self.is_pipeline_cell

    def append_output(self, chunk: str):
        self.output += chunk

    def reset_state(self):
        """Clear output and error before a new run."""
        self.output = ""
        self.has_error = False
        self.error = None

    def fail(self, message: str):
        self.has_error = True
        self.error = message
        self.output = message


class Session(BaseModel):
    """A group of cells sharing one remote kernel."""
    id: str
    name: str = ""
    server: Optional[ServerConfig] = None
    kernel_name: str = ""
    kernel_id: str = ""
    cells: list[str] = Field(default_factory=list)

    @property
    def is_bound(self) -> bool:
        """Whether a server and a kernel type are known."""
        return self.server is not None and is_valid_kernel_name(self.kernel_name)


@dataclass
class ExecutionResult:
    """Result of executing one code cell."""
    cell_id: str
    output: str = ""
    has_error: bool = False
    error: Optional[ExecutionError] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "cell_id": self.cell_id,
            "output": self.output,
            "has_error": self.has_error,
            "error": str(self.error) if self.error is not None else None,
        }
