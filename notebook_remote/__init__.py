"""
notebook-remote: run document code cells on remote Jupyter kernels.

This package provides:
- A WebSocket client that streams cell output from a remote kernel
- Kernel lifecycle calls (create, delete, list) over the server REST API
- A session registry with isolated and shared addressing modes
- Discovery of a reachable server with a usable kernel type
- An executor that runs cells one at a time or session by session
"""

from notebook_remote.client import CodeBlock, KernelClient
from notebook_remote.config import ConfigStore, Settings
from notebook_remote.discovery import DiscoveryResult, discover
from notebook_remote.document import Block, BlockType, Document
from notebook_remote.lifecycle import KernelManager
from notebook_remote.models import (
    CodeCell,
    ExecutionResult,
    KernelSpec,
    RunningKernel,
    ServerConfig,
    Session,
)
from notebook_remote.orchestrator import CellExecutor
from notebook_remote.session import SHARED_SESSION_ID, SessionRegistry

__version__ = "0.1.0"
__all__ = [
    "Block",
    "BlockType",
    "CellExecutor",
    "CodeBlock",
    "CodeCell",
    "ConfigStore",
    "DiscoveryResult",
    "Document",
    "ExecutionResult",
    "KernelClient",
    "KernelManager",
    "KernelSpec",
    "RunningKernel",
    "SHARED_SESSION_ID",
    "ServerConfig",
    "Session",
    "SessionRegistry",
    "Settings",
    "discover",
]
