"""
Document: JSON document holding code and markdown blocks.
"""

import json
import logging
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field

from notebook_remote.models import CodeCell, ServerConfig, url_without_protocol
from notebook_remote.session import SessionRegistry


logger = logging.getLogger(__name__)


class BlockType(str, Enum):
    """Type of document block."""
    CODE = "code"
    MARKDOWN = "markdown"


class Block(BaseModel):
    """A single document block."""
    id: str = Field(default_factory=lambda: f"block_{uuid.uuid4().hex}")
    type: BlockType = BlockType.CODE
    source: str = ""
    server: str = ""  # "host:port"
    kernel_name: str = ""
    session_id: str = ""
    output: str = ""
    has_error: bool = False
    is_published: bool = False
    is_pipeline: bool = False


class Document(BaseModel):
    """
    A document with executable code blocks.

    The session layout of the document (saved sessions and shared-mode
    state) is kept in ``metadata["sessions"]``.
    """

    version: str = "1.0"
    blocks: list[Block] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def __init__(self, **data):
        super().__init__(**data)
        if not self.metadata:
            self.metadata = {
                "name": "Untitled",
                "created": datetime.now().isoformat(),
                "modified": datetime.now().isoformat(),
            }

    def add_block(self, block: Optional[Block] = None, **kwargs) -> Block:
        if block is None:
            block = Block(**kwargs)
        self.blocks.append(block)
        self._touch()
        return block

    def code_blocks(self) -> list[Block]:
        return [b for b in self.blocks if b.type == BlockType.CODE]

    def get_block(self, block_id: str) -> Optional[Block]:
        for block in self.blocks:
            if block.id == block_id:
                return block
        return None

    def _touch(self):
        self.metadata["modified"] = datetime.now().isoformat()

    def save(self, path: Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "Document":
        with open(Path(path), "r") as f:
            data = json.load(f)
        return cls.model_validate(data)

    @classmethod
    def new(cls, name: str = "Untitled") -> "Document":
        return cls(
            metadata={
                "name": name,
                "created": datetime.now().isoformat(),
                "modified": datetime.now().isoformat(),
            }
        )


def find_server(address: str, servers: Sequence[ServerConfig]) -> Optional[ServerConfig]:
    """Match a ``host:port`` block attribute against configured servers."""
    if not address:
        return None
    key = url_without_protocol(address)
    for server in servers:
        if server.key == key:
            return server
    return None


def register_code_cells(
    document: Document,
    registry: SessionRegistry,
    servers: Sequence[ServerConfig] = (),
) -> list[CodeCell]:
    """
    Register every code block of a document as a cell.

    Restores the document's saved session layout first, so blocks bound
    to a saved session rejoin it. Blocks with duplicate ids are
    registered once.

    Returns:
        The registered cells, in document order
    """
    snapshot = document.metadata.get("sessions")
    if snapshot:
        registry.restore(snapshot)

    registered = []
    seen = set()
    for block in document.code_blocks():
        if block.id in seen:
            logger.warning("Skipping code block with duplicate id %s", block.id)
            continue
        seen.add(block.id)
        cell = CodeCell(
            id=block.id,
            code=block.source,
            kernel_name=block.kernel_name,
            session_id=block.session_id,
            server=find_server(block.server, servers),
            output=block.output,
            has_error=block.has_error,
            is_published=block.is_published,
            is_pipeline_cell=block.is_pipeline,
        )
        registered.append(registry.add_cell(cell))
    return registered


def apply_cell_state(document: Document, registry: SessionRegistry):
    """Copy cell outputs and bindings back into the document."""
    for block in document.code_blocks():
        cell = registry.get_cell(block.id)
        if cell is None:
            continue
        block.output = cell.output
        block.has_error = cell.has_error
        block.session_id = cell.session_id
        if cell.server is not None:
            block.server = cell.server.key
        if cell.kernel_name:
            block.kernel_name = cell.kernel_name
    document.metadata["sessions"] = registry.snapshot()
    document._touch()
