"""
CellExecutor: runs cells through their sessions and records the outcome.
"""

import asyncio
import logging
from typing import Callable, Optional

from notebook_remote.client import DEFAULT_TIMEOUT, CodeBlock, KernelClient
from notebook_remote.errors import ConfigurationError, NotebookRemoteError
from notebook_remote.models import CodeCell, ExecutionResult, Session, is_valid_kernel_name
from notebook_remote.protocol import DEFAULT_USERNAME
from notebook_remote.session import SessionRegistry


logger = logging.getLogger(__name__)

NO_SERVER_MESSAGE = "Error: No server configuration. Please select a server."
INVALID_KERNEL_MESSAGE = "Error: Invalid kernel name. Please select a valid kernel."


class CellExecutor:
    """
    Drives cell execution against a SessionRegistry.

    Each run moves a cell from idle to executing and then to completed
    or failed; a finished cell can run again. Output chunks are appended
    to the cell as they arrive. Every run gets a generation number from
    the registry and only writes to the cell while that generation is
    current, so when the same cell is started twice the older run's
    results are dropped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        timeout: float = DEFAULT_TIMEOUT,
        username: str = DEFAULT_USERNAME,
        client_factory: Callable[..., KernelClient] = KernelClient,
        on_output: Optional[Callable[[str, str], None]] = None,
    ):
        self.registry = registry
        self.timeout = timeout
        self.username = username
        self.client_factory = client_factory
        self.on_output = on_output

    def _client(self, session: Session) -> KernelClient:
        return self.client_factory(
            session.server, session.kernel_id, timeout=self.timeout, username=self.username
        )

    def _stream_to(self, generations: dict[str, int]):
        """Build a streaming callback that appends chunks to current runs only."""
        def on_chunk(cell_id: str, chunk: str):
            generation = generations.get(cell_id)
            if generation is None or not self.registry.is_current(cell_id, generation):
                return
            self.registry.cells[cell_id].append_output(chunk)
            if self.on_output is not None:
                self.on_output(cell_id, chunk)
        return on_chunk

    def _apply_result(self, result: ExecutionResult, generation: int):
        if not self.registry.is_current(result.cell_id, generation):
            logger.info("Discarding superseded result for cell %s", result.cell_id)
            return
        cell = self.registry.cells[result.cell_id]
        cell.output = result.output
        cell.has_error = result.has_error
        cell.error = str(result.error) if result.error is not None else None

    def _fail(self, cell_id: str, generation: int, message: str):
        if self.registry.is_current(cell_id, generation):
            self.registry.cells[cell_id].fail(message)

    def _finish(self, cell_id: str, generation: int):
        if self.registry.is_current(cell_id, generation):
            self.registry.cells[cell_id].is_executing = False

    @staticmethod
    def _validate(cell: CodeCell) -> Optional[str]:
        if cell.server is None:
            return NO_SERVER_MESSAGE
        if not is_valid_kernel_name(cell.kernel_name):
            return INVALID_KERNEL_MESSAGE
        return None

    async def _resolve_shared(self, cell: CodeCell):
        session = await self.registry.ensure_shared_session()
        self.registry.add_cell_to_session(cell.id, session.id)
        cell.server = session.server
        cell.kernel_name = session.kernel_name

    def _session_for(self, cell: CodeCell) -> Session:
        session = self.registry.get_session(cell.session_id) if cell.session_id else None
        if session is None:
            session = self.registry.create_session(
                server=cell.server, kernel_name=cell.kernel_name
            )
            logger.info("Creating new session %s for cell %s", session.id, cell.id)
            self.registry.add_cell_to_session(cell.id, session.id)
        if session.server is None:
            session.server = cell.server
        if not is_valid_kernel_name(session.kernel_name):
            session.kernel_name = cell.kernel_name
        return session

    async def execute_cell(self, cell_id: str) -> Optional[ExecutionResult]:
        """
        Run one cell and update its state.

        Configuration problems and remote failures are recorded on the
        cell, not raised.

        Returns:
            The execution result, or None if the run failed before or
            during submission

        Raises:
            ConfigurationError: the cell is not registered
        """
        cell = self.registry.require_cell(cell_id)
        generation = self.registry.begin_execution(cell_id)
        try:
            if self.registry.is_shared_cell(cell):
                try:
                    await self._resolve_shared(cell)
                except NotebookRemoteError as e:
                    logger.error("Cannot execute cell %s: %s", cell_id, e)
                    self._fail(cell_id, generation, f"Error: {e}")
                    return None

            problem = self._validate(cell)
            if problem is not None:
                logger.error("Cannot execute cell %s: %s", cell_id, problem)
                self._fail(cell_id, generation, problem)
                return None

            session = self._session_for(cell)
            await self.registry.ensure_kernel(session)
            logger.info("Executing cell %s in session %s on kernel %s",
                        cell_id, session.id, session.kernel_id)
            results = await self._client(session).execute_batch(
                [CodeBlock(cell.id, cell.code)],
                self._stream_to({cell_id: generation}),
            )
            result = results[0]
            self._apply_result(result, generation)
            return result
        except Exception as e:
            logger.error("Execution error for cell %s: %s", cell_id, e)
            self._fail(cell_id, generation, str(e) or type(e).__name__)
            return None
        finally:
            self._finish(cell_id, generation)

    async def execute_all(self) -> list[ExecutionResult]:
        """
        Run every cell that belongs to a session.

        Sessions run concurrently; the cells of one session run in order
        over one connection. A failing session only marks its own cells.
        """
        groups: dict[str, list[CodeCell]] = {}
        for cell in self.registry.cells.values():
            if not cell.session_id or self.registry.get_session(cell.session_id) is None:
                continue
            groups.setdefault(cell.session_id, []).append(cell)

        batches = [self._execute_session(sid, cells) for sid, cells in groups.items()]
        results: list[ExecutionResult] = []
        for session_results in await asyncio.gather(*batches):
            results.extend(session_results)
        return results

    async def _execute_session(self, session_id: str, cells: list[CodeCell]) -> list[ExecutionResult]:
        session = self.registry.sessions[session_id]
        generations = {cell.id: self.registry.begin_execution(cell.id) for cell in cells}
        try:
            if session_id == self.registry.shared_session_id and self.registry.shared_mode:
                await self.registry.ensure_shared_session()
            first = cells[0]
            if session.server is None:
                session.server = first.server
            if not is_valid_kernel_name(session.kernel_name):
                session.kernel_name = first.kernel_name
            if session.server is None:
                raise ConfigurationError(NO_SERVER_MESSAGE)

            await self.registry.ensure_kernel(session)
            logger.info("Executing %d cells in session %s", len(cells), session_id)
            results = await self._client(session).execute_batch(
                [CodeBlock(cell.id, cell.code) for cell in cells],
                self._stream_to(generations),
            )
            for result in results:
                self._apply_result(result, generations[result.cell_id])
            return results
        except Exception as e:
            logger.error("Execution failed for session %s: %s", session_id, e)
            for cell in cells:
                self._fail(cell.id, generations[cell.id], str(e) or type(e).__name__)
            return []
        finally:
            for cell in cells:
                self._finish(cell.id, generations[cell.id])
