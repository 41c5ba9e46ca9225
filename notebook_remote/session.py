"""
SessionRegistry: which cell runs in which session, on which kernel.
"""

import asyncio
import logging
import uuid
from typing import Any, Optional, Sequence

from notebook_remote.discovery import discover
from notebook_remote.errors import ConfigurationError, NotebookRemoteError
from notebook_remote.lifecycle import KernelManager
from notebook_remote.models import CodeCell, ServerConfig, Session


logger = logging.getLogger(__name__)

SHARED_SESSION_ID = "shared-session"
SHARED_SESSION_NAME = "Shared Session"


class SessionRegistry:
    """
    Owns all cells and sessions of one document.

    Two addressing modes are supported:
    - Isolated: every session is independent; a cell without a session
      gets a fresh one when it first runs.
    - Shared: every non-published, non-pipeline cell without an explicit
      session is attached to one well-known session whose server and
      kernel type are found by discovery on first use.

    Remote kernels are created lazily and reused; deleting a session
    shuts its kernel down on a best-effort basis.
    """

    def __init__(
        self,
        kernel_manager: Optional[KernelManager] = None,
        servers: Optional[Sequence[ServerConfig]] = None,
    ):
        """
        Initialize an empty registry.

        Args:
            kernel_manager: Used to create and delete remote kernels
            servers: Candidate servers for shared-session discovery
        """
        self.kernel_manager = kernel_manager
        self.servers: list[ServerConfig] = list(servers or [])
        self.cells: dict[str, CodeCell] = {}
        self.sessions: dict[str, Session] = {}
        self.shared_mode = False
        self.shared_session_id: Optional[str] = None
        self._shared_lock = asyncio.Lock()
        self._kernel_locks: dict[str, asyncio.Lock] = {}

    # Cells

    def add_cell(self, cell: CodeCell) -> CodeCell:
        """
        Register a cell, replacing any cell with the same id.

        A cell that names a session joins it (an unknown session is
        recreated from the cell's server and kernel). In shared mode an
        unbound, non-excluded cell is attached to the shared session.
        """
        previous = self.cells.get(cell.id)
        if previous is not None and previous.session_id and previous.session_id != cell.session_id:
            self._detach(cell.id, previous.session_id)

        cell.is_executing = False
        self.cells[cell.id] = cell

        if cell.session_id:
            session = self.sessions.get(cell.session_id)
            if session is None:
                logger.info("Recreating session %s for cell %s", cell.session_id, cell.id)
                session = self.create_session(
                    server=cell.server, kernel_name=cell.kernel_name, session_id=cell.session_id
                )
            elif cell.server is not None and session.server is None:
                session.server = cell.server
                session.kernel_name = cell.kernel_name
            self.add_cell_to_session(cell.id, session.id)
        elif self.shared_mode and not cell.is_excluded:
            self.apply_shared_session_to_cell(cell.id)
        return cell

    def remove_cell(self, cell_id: str) -> Optional[CodeCell]:
        """Forget a cell whose document node was removed."""
        cell = self.cells.pop(cell_id, None)
        if cell is not None and cell.session_id:
            self._detach(cell_id, cell.session_id)
        return cell

    def get_cell(self, cell_id: str) -> Optional[CodeCell]:
        return self.cells.get(cell_id)

    def require_cell(self, cell_id: str) -> CodeCell:
        cell = self.cells.get(cell_id)
        if cell is None:
            raise ConfigurationError(f"Cell {cell_id} not found")
        return cell

    # Sessions

    def create_session(
        self,
        name: str = "",
        server: Optional[ServerConfig] = None,
        kernel_name: str = "",
        session_id: Optional[str] = None,
    ) -> Session:
        """Create an empty session with no kernel yet."""
        session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        session = Session(
            id=session_id,
            name=name or f"Session {len(self.sessions) + 1}",
            server=server,
            kernel_name=kernel_name,
        )
        self.sessions[session_id] = session
        logger.info("Created session %s (%s)", session_id, session.name)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def get_cells_by_session(self, session_id: str) -> list[CodeCell]:
        session = self.sessions.get(session_id)
        if session is None:
            return []
        return [self.cells[cid] for cid in session.cells if cid in self.cells]

    def add_cell_to_session(self, cell_id: str, session_id: str):
        """Move a cell into a session, leaving any session it was in."""
        cell = self.require_cell(cell_id)
        session = self.sessions.get(session_id)
        if session is None:
            raise ConfigurationError(f"Session {session_id} not found")

        if cell.session_id and cell.session_id != session_id:
            self._detach(cell_id, cell.session_id)
        if cell_id not in session.cells:
            session.cells.append(cell_id)
        cell.session_id = session_id

    def remove_cell_from_session(self, cell_id: str, session_id: str):
        cell = self.cells.get(cell_id)
        self._detach(cell_id, session_id)
        if cell is not None and cell.session_id == session_id:
            cell.session_id = ""

    def _detach(self, cell_id: str, session_id: str):
        session = self.sessions.get(session_id)
        if session is not None and cell_id in session.cells:
            session.cells.remove(cell_id)

    async def delete_session(self, session_id: str) -> bool:
        """
        Delete a session, unbind its cells and shut down its kernel.

        Kernel shutdown failures are logged, not raised.

        Returns:
            True if the session existed
        """
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False

        for cell in self.cells.values():
            if cell.session_id == session_id:
                cell.session_id = ""
        self._kernel_locks.pop(session_id, None)
        if self.shared_session_id == session_id:
            self.shared_session_id = None

        await self._delete_kernel(session)
        logger.info("Deleted session %s", session_id)
        return True

    async def _delete_kernel(self, session: Session):
        if not session.kernel_id or session.server is None or self.kernel_manager is None:
            return
        try:
            await self.kernel_manager.delete(session.server, session.kernel_id)
        except NotebookRemoteError as e:
            logger.error("Failed to delete kernel %s: %s", session.kernel_id, e)

    async def ensure_kernel(self, session: Session) -> str:
        """
        Return the session's kernel id, starting a kernel on first use.

        Raises:
            ConfigurationError: the session has no server
            KernelCreationError: the server could not start the kernel
        """
        lock = self._kernel_locks.setdefault(session.id, asyncio.Lock())
        async with lock:
            if session.kernel_id:
                return session.kernel_id
            if session.server is None:
                raise ConfigurationError(f"Session {session.id} has no server configured")
            if self.kernel_manager is None:
                raise ConfigurationError("No kernel manager available to start kernels")

            kernel_name = await self.kernel_manager.resolve_kernel_name(
                session.server, session.kernel_name
            )
            session.kernel_id = await self.kernel_manager.create(session.server, kernel_name)
            session.kernel_name = kernel_name
            return session.kernel_id

    # Shared mode

    def set_shared_mode(self, enabled: bool) -> bool:
        """
        Switch between shared and isolated addressing.

        Enabling attaches every unbound, non-excluded cell to the shared
        session. Disabling keeps existing bindings.
        """
        was_enabled = self.shared_mode
        self.shared_mode = enabled
        if enabled and not was_enabled:
            attached = 0
            for cell in list(self.cells.values()):
                if self.apply_shared_session_to_cell(cell.id):
                    attached += 1
            logger.info("Shared session mode enabled, attached %d cells", attached)
        elif was_enabled and not enabled:
            logger.info("Shared session mode disabled")
        return self.shared_mode

    def toggle_shared_mode(self) -> bool:
        return self.set_shared_mode(not self.shared_mode)

    def shared_session(self) -> Session:
        """The shared session, created as an unbound placeholder if missing."""
        if self.shared_session_id and self.shared_session_id in self.sessions:
            return self.sessions[self.shared_session_id]
        session = self.sessions.get(SHARED_SESSION_ID)
        if session is None:
            session = self.create_session(SHARED_SESSION_NAME, session_id=SHARED_SESSION_ID)
        self.shared_session_id = session.id
        return session

    def is_shared_cell(self, cell: CodeCell) -> bool:
        """Whether shared mode decides this cell's session."""
        if not self.shared_mode or cell.is_excluded:
            return False
        return not cell.session_id or cell.session_id == self.shared_session_id

    def apply_shared_session_to_cell(self, cell_id: str) -> bool:
        """
        Attach a cell to the shared session.

        Published and pipeline cells are skipped, and so are cells that
        already belong to another session.

        Returns:
            True if the cell was attached by this call
        """
        cell = self.cells.get(cell_id)
        if cell is None:
            logger.warning("Cell %s not found when applying shared session", cell_id)
            return False
        if cell.is_excluded:
            return False
        if cell.session_id and cell.session_id != self.shared_session_id:
            return False
        session = self.shared_session()
        if cell.session_id == session.id and cell_id in session.cells:
            return False
        self.add_cell_to_session(cell_id, session.id)
        return True

    async def ensure_shared_session(self) -> Session:
        """
        Return the shared session, bound to a server and kernel type.

        Discovery runs only when the session has no server or kernel yet.

        Raises:
            ConfigurationError: discovery found no usable server
        """
        async with self._shared_lock:
            session = self.shared_session()
            if session.is_bound:
                return session
            if self.kernel_manager is None:
                raise ConfigurationError("No kernel manager available for discovery")
            result = await discover(self.servers, self.kernel_manager)
            session.server = result.server
            session.kernel_name = result.kernel_name
            logger.info("Shared session bound to %s with kernel %s",
                        result.server, result.kernel_name)
            return session

    # Execution generations

    def begin_execution(self, cell_id: str) -> int:
        """Start a new run of a cell and return its generation."""
        cell = self.require_cell(cell_id)
        cell.generation += 1
        cell.is_executing = True
        cell.reset_state()
        return cell.generation

    def is_current(self, cell_id: str, generation: int) -> bool:
        """Whether ``generation`` is still the latest run of the cell."""
        cell = self.cells.get(cell_id)
        return cell is not None and cell.generation == generation

    # Persistence

    def snapshot(self) -> dict[str, Any]:
        """Session layout for saving alongside the document."""
        return {
            "saved_sessions": [
                {"id": s.id, "name": s.name, "is_shared": s.id == self.shared_session_id}
                for s in self.sessions.values()
            ],
            "shared_mode": self.shared_mode,
            "shared_session_id": self.shared_session_id,
        }

    def restore(self, snapshot: dict[str, Any]):
        """
        Recreate saved sessions as empty shells.

        Servers, kernel types and members are bound again when cells are
        registered; kernel ids are never restored.
        """
        self.sessions.clear()
        self._kernel_locks.clear()
        self.shared_mode = bool(snapshot.get("shared_mode", False))
        self.shared_session_id = snapshot.get("shared_session_id")
        for saved in snapshot.get("saved_sessions", []):
            self.sessions[saved["id"]] = Session(id=saved["id"], name=saved.get("name", ""))
            if saved.get("is_shared"):
                self.shared_session_id = saved["id"]
        if self.shared_session_id not in self.sessions:
            self.shared_session_id = None

    async def cleanup(self):
        """Shut down every kernel and forget all sessions and cells."""
        for session in list(self.sessions.values()):
            await self._delete_kernel(session)
        self.sessions.clear()
        self.cells.clear()
        self._kernel_locks.clear()
        self.shared_session_id = None
