"""
KernelClient: runs batches of code over one kernel WebSocket connection.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from notebook_remote.errors import (
    ConnectivityError,
    ExecutionError,
    ExecutionTimeoutError,
    ProtocolError,
)
from notebook_remote.models import ExecutionResult, ServerConfig
from notebook_remote.protocol import (
    DEFAULT_USERNAME,
    DisplayDataMessage,
    ErrorMessage,
    ExecuteResultMessage,
    KernelMessage,
    OtherMessage,
    StatusMessage,
    StreamMessage,
    build_execute_request,
    format_error,
    format_mime_bundle,
    new_message_id,
    parse_message,
)


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

OutputCallback = Callable[[str, str], None]


@dataclass
class CodeBlock:
    """One submission in a batch."""
    id: str
    code: str


@dataclass
class _Pending:
    block: CodeBlock
    output: str = ""
    has_error: bool = False
    error: Optional[ExecutionError] = None
    done: bool = False


class _Batch:
    """
    Bookkeeping for one batch: which request is outstanding, what each
    submission has produced so far, and what to send next.
    """

    def __init__(self, blocks: Sequence[CodeBlock], session: str, username: str,
                 on_output: Optional[OutputCallback] = None):
        self.blocks = list(blocks)
        self.session = session
        self.username = username
        self.on_output = on_output
        self.index = 0
        self._pending: dict[str, _Pending] = {}
        self._results: list[_Pending] = []

    @property
    def done(self) -> bool:
        return self.index >= len(self.blocks)

    def submit(self, block: CodeBlock) -> dict:
        """Build the request for ``block`` and register it as pending."""
        request = build_execute_request(block.code, self.session, self.username)
        self._pending[request["header"]["msg_id"]] = _Pending(block)
        return request

    def submit_current(self) -> dict:
        return self.submit(self.blocks[self.index])

    def handle(self, message: KernelMessage) -> Optional[dict]:
        """
        Apply one inbound message.

        Returns:
            The next request to send, if this message completed a
            submission and more are queued
        """
        status = self._pending.get(message.parent_id)
        if status is None or status.done:
            return None

        chunk = ""
        if isinstance(message, StreamMessage):
            chunk = message.text
        elif isinstance(message, (ExecuteResultMessage, DisplayDataMessage)):
            chunk = format_mime_bundle(message.data)
        elif isinstance(message, ErrorMessage):
            chunk = format_error(message.ename, message.evalue, message.traceback)
            status.has_error = True
            status.error = message.to_exception()
        elif isinstance(message, StatusMessage):
            if message.is_idle:
                return self._complete(status)
        elif isinstance(message, OtherMessage):
            pass

        if chunk:
            status.output += chunk
            if self.on_output is not None:
                self.on_output(status.block.id, chunk)
        return None

    def _complete(self, status: _Pending) -> Optional[dict]:
        status.done = True
        self._results.append(status)
        self.index += 1
        if self.done:
            return None
        return self.submit_current()

    def results(self) -> list[ExecutionResult]:
        return [
            ExecutionResult(
                cell_id=status.block.id,
                output=status.output,
                has_error=status.has_error,
                error=status.error,
            )
            for status in self._results
        ]


class KernelClient:
    """
    Client for one remote kernel.

    Every batch opens its own connection, submits the code blocks one
    after another (the next request is sent only once the previous one
    reports idle) and closes the connection when the last block is done.
    """

    def __init__(
        self,
        server: ServerConfig,
        kernel_id: str,
        timeout: float = DEFAULT_TIMEOUT,
        username: str = DEFAULT_USERNAME,
        connect=None,
    ):
        self.server = server
        self.kernel_id = kernel_id
        self.timeout = timeout
        self.username = username
        self.session = new_message_id()
        self._connect = connect or websockets.connect

    @property
    def url(self) -> str:
        return self.server.channels_url(self.kernel_id)

    async def execute_batch(
        self,
        blocks: Sequence[CodeBlock],
        on_output: Optional[OutputCallback] = None,
    ) -> list[ExecutionResult]:
        """
        Execute code blocks sequentially on the kernel.

        Args:
            blocks: Code blocks, run in order
            on_output: Called with ``(block_id, chunk)`` for every output chunk

        Returns:
            One ExecutionResult per block, in submission order

        Raises:
            ExecutionTimeoutError: the batch exceeded ``timeout``
            ConnectivityError: transport failure or premature close
        """
        if not blocks:
            return []
        batch = _Batch(blocks, self.session, self.username, on_output)
        try:
            return await asyncio.wait_for(self._run(batch), self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Batch on kernel %s timed out after %ss", self.kernel_id, self.timeout)
            raise ExecutionTimeoutError(
                f"Execution timed out after {self.timeout:g} seconds"
            ) from e

    async def execute(self, code: str, on_output: Optional[Callable[[str], None]] = None,
                      cell_id: str = "single") -> ExecutionResult:
        """Execute a single snippet as a one-item batch."""
        callback = None
        if on_output is not None:
            def callback(_block_id, chunk):
                on_output(chunk)
        results = await self.execute_batch([CodeBlock(cell_id, code)], callback)
        return results[0]

    async def _run(self, batch: _Batch) -> list[ExecutionResult]:
        try:
            async with self._connect(self.url) as ws:
                await ws.send(json.dumps(batch.submit_current()))
                async for raw in ws:
                    try:
                        message = parse_message(raw)
                    except ProtocolError as e:
                        logger.warning("Discarding malformed message from kernel %s: %s",
                                       self.kernel_id, e)
                        continue
                    next_request = batch.handle(message)
                    if next_request is not None:
                        await ws.send(json.dumps(next_request))
                    elif batch.done:
                        return batch.results()
        except ConnectionClosed as e:
            raise ConnectivityError(
                f"Kernel connection closed prematurely ({batch.index}/{len(batch.blocks)} done)"
            ) from e
        except (OSError, WebSocketException) as e:
            raise ConnectivityError(f"Kernel connection failed: {e}") from e

        raise ConnectivityError(
            f"Kernel connection closed prematurely ({batch.index}/{len(batch.blocks)} done)"
        )
