"""
CLI interface for notebook-remote.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.status import Status
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from notebook_remote.config import ConfigStore, Settings, parse_server_address
from notebook_remote.discovery import discover
from notebook_remote.document import BlockType, Document, apply_cell_state, register_code_cells
from notebook_remote.errors import NotebookRemoteError
from notebook_remote.lifecycle import KernelManager
from notebook_remote.models import CodeCell, ServerConfig
from notebook_remote.orchestrator import CellExecutor
from notebook_remote.session import SessionRegistry
from notebook_remote.utils import format_rich_output, get_cell_status, truncate_text


console = Console()
logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _fail(message: str):
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _resolve_server(settings: Settings, address: str, token: str = "") -> ServerConfig:
    """Use the configured server for an address, keeping its token."""
    server = parse_server_address(address, token=token)
    configured = settings.find_server(server.host, server.port)
    if configured is not None and not token:
        return configured
    return server


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Show info-level logs")
@click.option("--config-dir", type=click.Path(file_okay=False), default=None,
              help="Config directory (default: $NOTEBOOK_REMOTE_HOME or ~/.notebook_remote)")
@click.pass_context
def main(ctx, verbose: bool, config_dir: Optional[str]):
    """notebook-remote: run document code cells on remote Jupyter kernels."""
    _setup_logging(verbose)
    ctx.obj = ConfigStore(Path(config_dir) if config_dir else None)


# Servers

@main.group()
def servers():
    """Manage known kernel servers."""


@servers.command("list")
@click.pass_obj
def servers_list(store: ConfigStore):
    """List configured servers."""
    try:
        settings = store.load()
    except NotebookRemoteError as e:
        _fail(str(e))

    if not settings.servers:
        console.print("[yellow]No servers configured[/yellow]")
        console.print("[dim]Add one with: notebook-remote servers add HOST:PORT[/dim]")
        return

    table = Table(title="Kernel Servers", border_style="blue")
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Server", style="white")
    table.add_column("Token", style="dim")
    for i, server in enumerate(settings.servers):
        table.add_row(str(i), server.key, "yes" if server.token else "no")
    console.print(table)


@servers.command("add")
@click.argument("address")
@click.option("--token", "-t", default="", help="Server access token")
@click.pass_obj
def servers_add(store: ConfigStore, address: str, token: str):
    """Add a server given as HOST:PORT."""
    try:
        server = parse_server_address(address, token=token)
        settings = store.add_server(server)
    except NotebookRemoteError as e:
        _fail(str(e))
    console.print(f"[green]Added:[/green] {server.key}  [dim]({len(settings.servers)} servers)[/dim]")


@servers.command("remove")
@click.argument("address")
@click.pass_obj
def servers_remove(store: ConfigStore, address: str):
    """Remove a server given as HOST:PORT."""
    try:
        server = parse_server_address(address)
        removed = store.remove_server(server.host, server.port)
    except NotebookRemoteError as e:
        _fail(str(e))
    if not removed:
        _fail(f"Server {server.key} is not configured")
    console.print(f"[green]Removed:[/green] {server.key}")


# Kernels and discovery

async def _list_kernels(settings: Settings, targets: list[ServerConfig], running: bool):
    async with KernelManager(timeout=settings.request_timeout) as manager:
        listing = []
        for server in targets:
            try:
                if running:
                    items = await manager.list_running(server)
                else:
                    items = await manager.list_kernel_specs(server)
                listing.append((server, items, None))
            except NotebookRemoteError as e:
                listing.append((server, [], str(e)))
        return listing


@main.command()
@click.argument("address", required=False, default=None)
@click.option("--running", "-r", is_flag=True, help="List running kernels instead of kernel types")
@click.pass_obj
def kernels(store: ConfigStore, address: Optional[str], running: bool):
    """List kernel types (or running kernels) on servers."""
    try:
        settings = store.load()
        targets = [_resolve_server(settings, address)] if address else settings.servers
    except NotebookRemoteError as e:
        _fail(str(e))
    if not targets:
        console.print("[yellow]No servers configured[/yellow]")
        return

    for server, items, error in asyncio.run(_list_kernels(settings, targets, running)):
        if error:
            console.print(f"[red]{server.key}: {error}[/red]")
            continue
        table = Table(title=f"{'Running kernels' if running else 'Kernels'} on {server.key}",
                      border_style="blue")
        if running:
            table.add_column("Id", style="bold cyan")
            table.add_column("Name", style="white")
            table.add_column("State", style="dim")
            for kernel in items:
                table.add_row(kernel.id, kernel.name, kernel.execution_state)
        else:
            table.add_column("Name", style="bold cyan")
            table.add_column("Language", style="white")
            table.add_column("Display Name", style="dim")
            for spec in items:
                table.add_row(spec.name, spec.language, spec.display_name)
        console.print(table)


async def _discover(settings: Settings):
    async with KernelManager(timeout=settings.request_timeout) as manager:
        return await discover(settings.servers, manager)


@main.command("discover")
@click.pass_obj
def discover_command(store: ConfigStore):
    """Show which server and kernel type would be picked automatically."""
    try:
        settings = store.load()
        result = asyncio.run(_discover(settings))
    except NotebookRemoteError as e:
        _fail(str(e))
    console.print(Panel(
        f"[dim]Server:[/dim] {result.server.key}\n"
        f"[dim]Kernel:[/dim] {result.kernel_name}"
        + (f" [dim]({result.kernel_spec.language})[/dim]" if result.kernel_spec.language else ""),
        title="[bold blue]notebook-remote[/bold blue]",
        border_style="green",
    ))


# Execution

async def _exec(settings: Settings, code: str, server: Optional[ServerConfig],
                kernel_name: str, on_output) -> CodeCell:
    async with KernelManager(timeout=settings.request_timeout) as manager:
        registry = SessionRegistry(manager, settings.servers)
        if server is not None and not kernel_name:
            kernel_name = await manager.resolve_kernel_name(server, kernel_name)
        cell = registry.add_cell(CodeCell(code=code, server=server, kernel_name=kernel_name))
        if server is None:
            registry.set_shared_mode(True)

        executor = CellExecutor(
            registry,
            timeout=settings.execution_timeout,
            username=settings.username,
            on_output=on_output,
        )
        try:
            await executor.execute_cell(cell.id)
        finally:
            await registry.cleanup()
        return cell


@main.command("exec")
@click.argument("code")
@click.option("--server", "-s", "address", default=None, help="Server as HOST:PORT")
@click.option("--kernel", "-k", "kernel_name", default="", help="Kernel name, e.g. python3")
@click.pass_obj
def exec_command(store: ConfigStore, code: str, address: Optional[str], kernel_name: str):
    """Execute CODE on a remote kernel and stream its output.

    Without --server, the first reachable configured server is used.
    """
    streamed = []

    def on_output(_cell_id: str, chunk: str):
        streamed.append(chunk)
        console.print(Text.from_ansi(chunk), end="")

    try:
        settings = store.load()
        server = _resolve_server(settings, address) if address else None
        cell = asyncio.run(_exec(settings, code, server, kernel_name, on_output))
    except NotebookRemoteError as e:
        _fail(str(e))

    if not streamed:
        console.print(format_rich_output(cell))
    if cell.has_error:
        sys.exit(1)


@main.command()
@click.argument("path", type=click.Path(), default="document.json")
@click.option("--name", "-n", default=None, help="Document name")
@click.option("--server", "-s", "address", default="", help="Server for the code blocks")
@click.option("--kernel", "-k", "kernel_name", default="python3", help="Kernel for the code blocks")
def new(path: str, name: Optional[str], address: str, kernel_name: str):
    """Create a new document with starter blocks."""
    if name is None:
        name = Path(path).stem

    doc = Document.new(name=name)
    doc.add_block(type=BlockType.MARKDOWN, source=f"# {name}\n\nCode blocks below run on a remote kernel.")
    doc.add_block(type=BlockType.CODE, source="x = 21\nprint('ready')",
                  server=address, kernel_name=kernel_name)
    doc.add_block(type=BlockType.CODE, source="x * 2",
                  server=address, kernel_name=kernel_name)
    doc.save(Path(path))

    console.print(Panel(
        f"[green]Created:[/green] {path}\n"
        f"[dim]Name:[/dim] {name}\n"
        f"[dim]Blocks:[/dim] 3 (2 code, 1 markdown)",
        title="[bold blue]notebook-remote[/bold blue]",
        border_style="green",
    ))
    console.print(f"\n[dim]Run with:[/dim] notebook-remote run {path}")


async def _run_document(settings: Settings, doc: Document, shared: bool) -> SessionRegistry:
    async with KernelManager(timeout=settings.request_timeout) as manager:
        registry = SessionRegistry(manager, settings.servers)
        register_code_cells(doc, registry, settings.servers)
        if shared:
            registry.set_shared_mode(True)

        for cell in list(registry.cells.values()):
            if not cell.session_id and not cell.is_published:
                session = registry.create_session(server=cell.server, kernel_name=cell.kernel_name)
                registry.add_cell_to_session(cell.id, session.id)

        executor = CellExecutor(registry, timeout=settings.execution_timeout,
                                username=settings.username)
        try:
            await executor.execute_all()
        finally:
            apply_cell_state(doc, registry)
            await registry.cleanup()
        return registry


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--shared", is_flag=True, help="Run all cells in one shared session")
@click.option("--no-save", is_flag=True, help="Do not write outputs back to the document")
@click.pass_obj
def run(store: ConfigStore, path: str, shared: bool, no_save: bool):
    """Run every code block of a document."""
    try:
        settings = store.load()
        doc = Document.load(Path(path))
    except NotebookRemoteError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"Invalid document {path}: {e}")

    doc_name = doc.metadata.get("name", Path(path).stem)
    console.print(Panel(
        f"[bold]{doc_name}[/bold]  [dim]{path}[/dim]",
        title="[bold blue]notebook-remote[/bold blue]",
        border_style="blue",
    ))

    code_blocks = [b for b in doc.code_blocks() if b.source.strip()]
    if not code_blocks:
        console.print("[yellow]No code blocks to execute[/yellow]")
        return

    with Status("Executing...", console=console, spinner="dots"):
        asyncio.run(_run_document(settings, doc, shared))

    success_count = 0
    for index, block in enumerate(code_blocks):
        cell = CodeCell(id=block.id, output=block.output, has_error=block.has_error)
        status_char, status_style = get_cell_status(cell)
        if not cell.has_error:
            success_count += 1
        console.print(f"[dim]--- Block {index} ---[/dim]  [{status_style}]{status_char}[/{status_style}]"
                      f"  [dim]{truncate_text(block.session_id, 40)}[/dim]")
        console.print(Syntax(block.source, "python", theme="monokai", line_numbers=True))
        console.print(format_rich_output(cell))
        console.print()

    if not no_save:
        doc.save(Path(path))

    total = len(code_blocks)
    if success_count == total:
        console.print(f"[green]All {total} blocks executed successfully[/green]")
    else:
        console.print(f"[yellow]Executed {success_count}/{total} blocks without errors[/yellow]")


if __name__ == "__main__":
    main()
