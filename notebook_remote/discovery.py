"""
Discovery: find a reachable server with a usable kernel type.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from notebook_remote.errors import ConfigurationError, NotebookRemoteError
from notebook_remote.lifecycle import KernelManager
from notebook_remote.models import KernelSpec, ServerConfig, preferred_kernel_spec


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryResult:
    server: ServerConfig
    kernel_spec: KernelSpec

    @property
    def kernel_name(self) -> str:
        return self.kernel_spec.name


async def discover(servers: Sequence[ServerConfig], manager: KernelManager) -> DiscoveryResult:
    """
    Return the first reachable server that offers at least one kernel type.

    Servers are tried in order. On the first usable one, a Python kernel
    type is preferred, otherwise the first listed type is taken. Later
    servers are never contacted once a match is found.

    Raises:
        ConfigurationError: no server is configured, or none is usable
    """
    if not servers:
        raise ConfigurationError("No kernel servers configured. Please add a server first.")

    for server in servers:
        if not await manager.probe(server):
            logger.warning("Skipping server %s due to connection failure", server)
            continue

        try:
            specs = await manager.list_kernel_specs(server)
        except NotebookRemoteError as e:
            logger.warning("Failed to get kernels for %s: %s", server, e)
            continue

        spec = preferred_kernel_spec(specs)
        if spec is None:
            logger.warning("No kernels available on server %s", server)
            continue

        logger.info("Discovered server %s with kernel %s", server, spec.name)
        return DiscoveryResult(server, spec)

    raise ConfigurationError("Could not find a working server with available kernels.")
