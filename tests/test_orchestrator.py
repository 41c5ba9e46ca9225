"""
Tests for CellExecutor: single-cell runs, execute-all and shared mode.
"""

import asyncio
from functools import partial

import pytest

from notebook_remote.client import KernelClient
from notebook_remote.errors import ConfigurationError
from notebook_remote.models import CodeCell
from notebook_remote.orchestrator import INVALID_KERNEL_MESSAGE, NO_SERVER_MESSAGE, CellExecutor
from notebook_remote.session import SHARED_SESSION_ID, SessionRegistry

from fakes import FakeConnector, FakeJupyterServer, FakeKernelSocket, FakeServerPool


def make_executor(registry, connector, timeout=5.0, **kwargs):
    return CellExecutor(
        registry,
        timeout=timeout,
        client_factory=partial(KernelClient, connect=connector),
        **kwargs,
    )


class TestExecuteCell:
    """Test the single-cell state machine."""

    @pytest.mark.asyncio
    async def test_success(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="print:hello", server=server, kernel_name="python3"))
        assert not cell.is_executing

        result = await make_executor(registry, connector).execute_cell("a")

        assert result.output == "hello"
        assert cell.output == "hello"
        assert not cell.has_error
        assert not cell.is_executing
        assert cell.session_id in registry.sessions
        assert registry.sessions[cell.session_id].kernel_id == "kernel-1"
        assert fake_server.created == ["python3"]

    @pytest.mark.asyncio
    async def test_rerun_resets_and_reuses_kernel(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="raise:NameError", server=server, kernel_name="python3"))
        executor = make_executor(registry, connector)
        await executor.execute_cell("a")
        assert cell.has_error

        cell.code = "print:fixed"
        await executor.execute_cell("a")
        assert not cell.has_error
        assert cell.error is None
        assert cell.output == "fixed"
        assert fake_server.created == ["python3"]
        assert len(connector.sockets) == 2

    @pytest.mark.asyncio
    async def test_streaming_updates_cell_live(self, manager, server):
        seen = []
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="x", server=server, kernel_name="python3"))

        def chunks(code):
            return [
                ("stream", {"name": "stdout", "text": "one "}),
                ("stream", {"name": "stdout", "text": "two"}),
                ("status", {"execution_state": "idle"}),
            ]

        def on_output(cell_id, chunk):
            seen.append((chunk, cell.output, cell.is_executing))

        executor = make_executor(registry, FakeConnector(chunks), on_output=on_output)
        await executor.execute_cell("a")
        assert seen == [("one ", "one ", True), ("two", "one two", True)]
        assert cell.output == "one two"

    @pytest.mark.asyncio
    async def test_remote_exception_rendered(self, manager, server, connector):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="raise:ZeroDivisionError", server=server, kernel_name="python3"))
        result = await make_executor(registry, connector).execute_cell("a")
        assert result.has_error
        assert cell.has_error
        assert cell.error == "ZeroDivisionError: boom"
        assert "Traceback (most recent call last)" in cell.output
        assert not cell.is_executing

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kernel_name", ["", "none"])
    async def test_invalid_kernel_makes_no_network_call(self, manager, server, connector, fake_server, kernel_name):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="1", server=server, kernel_name=kernel_name))
        result = await make_executor(registry, connector).execute_cell("a")
        assert result is None
        assert cell.has_error
        assert cell.output == INVALID_KERNEL_MESSAGE
        assert not cell.is_executing
        assert connector.urls == []
        assert fake_server.requests == []

    @pytest.mark.asyncio
    async def test_missing_server(self, manager, connector, fake_server):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="1", kernel_name="python3"))
        await make_executor(registry, connector).execute_cell("a")
        assert cell.has_error
        assert cell.output == NO_SERVER_MESSAGE
        assert connector.urls == []
        assert fake_server.requests == []

    @pytest.mark.asyncio
    async def test_kernel_creation_failure(self, server, connector):
        fake = FakeJupyterServer(server, fail_create=True)
        registry = SessionRegistry(FakeServerPool(fake).manager())
        cell = registry.add_cell(CodeCell(id="a", code="1", server=server, kernel_name="python3"))
        await make_executor(registry, connector).execute_cell("a")
        assert cell.has_error
        assert "Failed to create kernel" in cell.output
        assert cell.error == cell.output
        assert not cell.is_executing
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_timeout(self, manager, server, connector):
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="hang", server=server, kernel_name="python3"))
        result = await make_executor(registry, connector, timeout=0.05).execute_cell("a")
        assert result is None
        assert cell.has_error
        assert "timed out" in cell.output
        assert not cell.is_executing
        assert connector.sockets[0].closed

    @pytest.mark.asyncio
    async def test_unknown_cell(self, manager, connector):
        with pytest.raises(ConfigurationError):
            await make_executor(SessionRegistry(manager), connector).execute_cell("missing")


class GatedSocket(FakeKernelSocket):
    """A socket whose replies wait for an event."""

    def __init__(self, gate, **kwargs):
        super().__init__(**kwargs)
        self.gate = gate

    async def __anext__(self):
        await self.gate.wait()
        return await super().__anext__()


class GatedConnector(FakeConnector):
    """Holds back replies on the first connection until ``release()``."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    def release(self):
        self.gate.set()

    def __call__(self, url, **kwargs):
        self.urls.append(url)
        if self.sockets:
            socket = FakeKernelSocket(self.responder)
        else:
            socket = GatedSocket(self.gate, responder=self.responder)
        self.sockets.append(socket)
        return socket


class TestSupersededRuns:
    """Test that a late result from an older run is discarded."""

    @pytest.mark.asyncio
    async def test_late_result_discarded(self, manager, server):
        connector = GatedConnector()
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="print:old", server=server, kernel_name="python3"))
        executor = make_executor(registry, connector)

        first = asyncio.create_task(executor.execute_cell("a"))
        for _ in range(100):
            if connector.sockets:
                break
            await asyncio.sleep(0.01)
        assert connector.sockets

        cell.code = "print:new"
        await executor.execute_cell("a")
        assert cell.output == "new"
        assert not cell.is_executing

        connector.release()
        await first
        assert cell.output == "new"
        assert not cell.has_error
        assert not cell.is_executing

    @pytest.mark.asyncio
    async def test_failed_rerun_supersedes_running_one(self, manager, server):
        connector = GatedConnector()
        registry = SessionRegistry(manager)
        cell = registry.add_cell(CodeCell(id="a", code="print:old", server=server, kernel_name="python3"))
        executor = make_executor(registry, connector)

        first = asyncio.create_task(executor.execute_cell("a"))
        for _ in range(100):
            if connector.sockets:
                break
            await asyncio.sleep(0.01)
        assert connector.sockets

        cell.kernel_name = "none"
        assert await executor.execute_cell("a") is None
        assert cell.output == INVALID_KERNEL_MESSAGE
        assert not cell.is_executing

        connector.release()
        await first
        assert cell.has_error
        assert cell.output == INVALID_KERNEL_MESSAGE
        assert not cell.is_executing
        assert len(connector.sockets) == 1


class TestExecuteAll:
    """Test batched execution of every session."""

    @pytest.mark.asyncio
    async def test_session_runs_in_order_on_one_connection(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager)
        session = registry.create_session(server=server, kernel_name="python3")
        for i in range(3):
            registry.add_cell(CodeCell(id=f"c{i}", code=f"print:{i}", session_id=session.id))

        results = await make_executor(registry, connector).execute_all()

        assert [r.cell_id for r in results] == ["c0", "c1", "c2"]
        assert [registry.cells[f"c{i}"].output for i in range(3)] == ["0", "1", "2"]
        assert len(connector.sockets) == 1
        assert [m["content"]["code"] for m in connector.sockets[0].sent] == ["print:0", "print:1", "print:2"]
        assert fake_server.created == ["python3"]

    @pytest.mark.asyncio
    async def test_error_does_not_stop_later_cells(self, manager, server, connector):
        registry = SessionRegistry(manager)
        session = registry.create_session(server=server, kernel_name="python3")
        first = registry.add_cell(CodeCell(id="c1", code="raise:ValueError", session_id=session.id))
        second = registry.add_cell(CodeCell(id="c2", code="print:after", session_id=session.id))

        await make_executor(registry, connector).execute_all()

        assert first.has_error
        assert first.error == "ValueError: boom"
        assert first.output.startswith("Error: ValueError\nboom\n")
        assert not second.has_error
        assert second.output == "after"

    @pytest.mark.asyncio
    async def test_skips_cells_without_session(self, manager, server, connector):
        registry = SessionRegistry(manager)
        loose = registry.add_cell(CodeCell(id="loose", code="print:x", server=server, kernel_name="python3"))
        assert await make_executor(registry, connector).execute_all() == []
        assert loose.output == ""
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_failing_session_leaves_siblings_alone(self, server, other_server, connector):
        healthy = FakeJupyterServer(server)
        broken = FakeJupyterServer(other_server, fail_create=True)
        registry = SessionRegistry(FakeServerPool(healthy, broken).manager())
        good = registry.create_session(server=server, kernel_name="python3")
        bad = registry.create_session(server=other_server, kernel_name="python3")
        ok_cells = [registry.add_cell(CodeCell(id=f"ok{i}", code=f"print:{i}", session_id=good.id))
                    for i in range(2)]
        bad_cells = [registry.add_cell(CodeCell(id=f"bad{i}", code="1", session_id=bad.id))
                     for i in range(2)]

        results = await make_executor(registry, connector).execute_all()

        assert sorted(r.cell_id for r in results) == ["ok0", "ok1"]
        assert [c.output for c in ok_cells] == ["0", "1"]
        assert not any(c.has_error for c in ok_cells)
        for cell in bad_cells:
            assert cell.has_error
            assert "Failed to create kernel" in cell.output
            assert not cell.is_executing

    @pytest.mark.asyncio
    async def test_session_timeout_marks_all_cells(self, manager, server, connector):
        registry = SessionRegistry(manager)
        session = registry.create_session(server=server, kernel_name="python3")
        cells = [
            registry.add_cell(CodeCell(id="c1", code="print:1", session_id=session.id)),
            registry.add_cell(CodeCell(id="c2", code="hang", session_id=session.id)),
        ]
        await make_executor(registry, connector, timeout=0.05).execute_all()
        for cell in cells:
            assert cell.has_error
            assert "timed out" in cell.output
            assert not cell.is_executing


class TestSharedMode:
    """Test execution through the shared session."""

    @pytest.mark.asyncio
    async def test_execute_all_discovers_once(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager, servers=[server])
        registry.set_shared_mode(True)
        cells = [registry.add_cell(CodeCell(id=f"c{i}", code=f"print:{i}")) for i in range(3)]
        assert all(c.session_id == SHARED_SESSION_ID for c in cells)

        await make_executor(registry, connector).execute_all()

        shared = registry.sessions[SHARED_SESSION_ID]
        assert shared.server == server
        assert shared.kernel_name == "python3"
        assert fake_server.created == ["python3"]
        assert len(connector.sockets) == 1
        assert [c.output for c in cells] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_execute_cell_uses_discovered_kernel(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager, servers=[server])
        registry.set_shared_mode(True)
        first = registry.add_cell(CodeCell(id="a", code="print:a"))
        second = registry.add_cell(CodeCell(id="b", code="print:b"))
        executor = make_executor(registry, connector)

        await executor.execute_cell("a")
        await executor.execute_cell("b")

        assert first.output == "a"
        assert second.output == "b"
        assert first.server == server
        assert second.kernel_name == "python3"
        assert first.session_id == second.session_id == SHARED_SESSION_ID
        assert fake_server.created == ["python3"]

    @pytest.mark.asyncio
    async def test_published_cell_stays_isolated(self, manager, server, connector, fake_server):
        registry = SessionRegistry(manager, servers=[server])
        registry.set_shared_mode(True)
        cell = registry.add_cell(CodeCell(id="pub", code="print:p", server=server,
                                          kernel_name="python3", is_published=True))
        await make_executor(registry, connector).execute_cell("pub")
        assert cell.output == "p"
        assert cell.session_id != SHARED_SESSION_ID

    @pytest.mark.asyncio
    async def test_no_usable_server(self, server, connector):
        pool = FakeServerPool(FakeJupyterServer(server, reachable=False))
        registry = SessionRegistry(pool.manager(), servers=[server])
        registry.set_shared_mode(True)
        cell = registry.add_cell(CodeCell(id="a", code="print:a"))

        result = await make_executor(registry, connector).execute_cell("a")

        assert result is None
        assert cell.has_error
        assert "Could not find a working server" in cell.output
        assert not cell.is_executing
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_no_servers_configured(self, manager, connector):
        registry = SessionRegistry(manager)
        registry.set_shared_mode(True)
        cells = [registry.add_cell(CodeCell(id=f"c{i}", code="1")) for i in range(2)]
        await make_executor(registry, connector).execute_all()
        for cell in cells:
            assert cell.has_error
            assert "No kernel servers configured" in cell.output
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_foreign_server_recorded_on_cell(self, server, connector):
        pool = FakeServerPool(FakeJupyterServer(server, body="<html>sign in</html>"))
        registry = SessionRegistry(pool.manager(), servers=[server])
        registry.set_shared_mode(True)
        cell = registry.add_cell(CodeCell(id="a", code="print:a"))

        result = await make_executor(registry, connector).execute_cell("a")

        assert result is None
        assert cell.has_error
        assert "Could not find a working server" in cell.output
        assert not cell.is_executing
        assert connector.urls == []
