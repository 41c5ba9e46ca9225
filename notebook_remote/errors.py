"""
Error hierarchy for notebook-remote.

    NotebookRemoteError
    ├── ConfigurationError
    ├── ConnectivityError
    ├── ProtocolError
    ├── KernelRequestError
    │   └── KernelCreationError
    ├── ExecutionTimeoutError
    └── ExecutionError
"""

from typing import Optional


class NotebookRemoteError(Exception):
    """Base class for all notebook-remote exceptions."""


class ConfigurationError(NotebookRemoteError):
    """Missing or invalid server / kernel configuration."""


class ConnectivityError(NotebookRemoteError):
    """A server could not be reached or the transport failed."""


class ProtocolError(NotebookRemoteError):
    """An inbound kernel message could not be decoded."""


class KernelRequestError(NotebookRemoteError):
    """A kernel management call returned a non-success response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class KernelCreationError(KernelRequestError):
    """A kernel could not be created on the server."""


class ExecutionTimeoutError(NotebookRemoteError, TimeoutError):
    """A batch did not finish within its wall-clock timeout."""


class ExecutionError(NotebookRemoteError):
    """The remote code raised an exception.

    This is not a client defect: it is captured from the kernel's
    ``error`` message and rendered into the cell output.
    """

    def __init__(self, ename: str, evalue: str, traceback: Optional[list[str]] = None):
        self.ename = ename
        self.evalue = evalue
        self.traceback = list(traceback or [])
        super().__init__(f"{ename}: {evalue}")
