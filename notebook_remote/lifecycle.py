"""
KernelManager: create, delete and list kernels through the server REST API.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from notebook_remote.errors import (
    ConnectivityError,
    KernelCreationError,
    KernelRequestError,
    ProtocolError,
)
from notebook_remote.models import (
    KernelSpec,
    RunningKernel,
    ServerConfig,
    is_valid_kernel_name,
    preferred_kernel_spec,
)


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 10.0


class KernelManager:
    """
    Kernel lifecycle calls against one or more kernel servers.

    Owns an ``httpx.AsyncClient`` unless one is passed in. Use as an
    async context manager, or call ``aclose()`` when done.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "KernelManager":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, server: ServerConfig, endpoint: str,
                       **kwargs) -> httpx.Response:
        try:
            return await self._client.request(
                method,
                server.api_url(endpoint),
                params=server.query_params(),
                **kwargs,
            )
        except httpx.ConnectError as e:
            raise ConnectivityError(f"Server {server} is not reachable") from e
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Connection to {server} timed out") from e
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Request to {server} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, message: str, error_cls=KernelRequestError):
        if response.is_success:
            return
        if response.status_code == 403:
            raise error_cls(f"{message}: Invalid token", response.status_code)
        raise error_cls(
            f"{message}: {response.status_code} {response.reason_phrase}",
            response.status_code,
        )

    @staticmethod
    def _json(response: httpx.Response, server: ServerConfig, expected: type):
        """Decode a response body, which must be a JSON value of type ``expected``."""
        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError(f"Server {server} did not return JSON: {e}") from e
        if not isinstance(payload, expected):
            raise ProtocolError(
                f"Unexpected response from {server}: expected a JSON "
                f"{'object' if expected is dict else 'array'}, got {type(payload).__name__}"
            )
        return payload

    async def probe(self, server: ServerConfig) -> bool:
        """Check that the server answers an authenticated API call."""
        try:
            response = await self._request("GET", server, "/kernels")
        except ConnectivityError as e:
            logger.warning("Probe failed for %s: %s", server, e)
            return False
        if not response.is_success:
            logger.warning("Probe failed for %s: HTTP %s", server, response.status_code)
            return False
        return True

    async def list_kernel_specs(self, server: ServerConfig) -> list[KernelSpec]:
        """
        List the kernel types a server can launch.

        Raises:
            ConnectivityError: transport failure
            KernelRequestError: non-success response
            ProtocolError: the body is not a kernelspecs listing
        """
        response = await self._request("GET", server, "/kernelspecs")
        self._check(response, f"Failed to get available kernels from {server}")
        payload: dict[str, Any] = self._json(response, server, dict)
        entries = payload.get("kernelspecs") or {}
        if not isinstance(entries, dict):
            raise ProtocolError(f"Unexpected kernelspecs listing from {server}")
        specs = []
        for name, entry in entries.items():
            entry = entry if isinstance(entry, dict) else {}
            spec = entry.get("spec")
            spec = spec if isinstance(spec, dict) else {}
            specs.append(KernelSpec(
                name=str(entry.get("name") or name),
                language=str(spec.get("language") or ""),
                display_name=str(spec.get("display_name") or ""),
            ))
        return specs

    async def list_running(self, server: ServerConfig) -> list[RunningKernel]:
        """List kernel instances currently running on a server."""
        response = await self._request("GET", server, "/kernels")
        self._check(response, f"Failed to list kernels on {server}")
        try:
            return [RunningKernel.model_validate(k) for k in self._json(response, server, list)]
        except ValidationError as e:
            raise ProtocolError(f"Unexpected kernel listing from {server}: {e}") from e

    async def resolve_kernel_name(self, server: ServerConfig, kernel_name: str) -> str:
        """
        Return ``kernel_name`` if usable, else a kernel type picked from the server.

        Raises:
            KernelCreationError: the name is invalid and no kernel type can
                be found to replace it
        """
        if is_valid_kernel_name(kernel_name):
            return kernel_name

        logger.error('Cannot create kernel with invalid name: "%s"', kernel_name)
        try:
            spec = preferred_kernel_spec(await self.list_kernel_specs(server))
        except (ConnectivityError, KernelRequestError, ProtocolError) as e:
            raise KernelCreationError(
                f'Cannot create kernel with invalid name: "{kernel_name}" ({e})'
            ) from e
        if spec is None:
            raise KernelCreationError(
                f'Cannot create kernel with invalid name: "{kernel_name}" '
                f"(no kernels available on {server})"
            )
        logger.info("Recovered by selecting kernel %s on %s", spec.name, server)
        return spec.name

    async def create(self, server: ServerConfig, kernel_name: str) -> str:
        """
        Start a kernel and return its id.

        Raises:
            KernelCreationError: the server refused or the name is unusable
            ConnectivityError: transport failure
        """
        kernel_name = await self.resolve_kernel_name(server, kernel_name)
        response = await self._request("POST", server, "/kernels", json={"name": kernel_name})
        self._check(response, f"Failed to create kernel {kernel_name}", KernelCreationError)
        try:
            kernel_id = self._json(response, server, dict).get("id")
        except ProtocolError as e:
            raise KernelCreationError(f"Failed to create kernel {kernel_name}: {e}") from e
        if not kernel_id or not isinstance(kernel_id, str):
            raise KernelCreationError(f"Server {server} returned no kernel id")
        logger.info("Created kernel %s (%s) on %s", kernel_id, kernel_name, server)
        return kernel_id

    async def delete(self, server: ServerConfig, kernel_id: str):
        """Shut down a kernel."""
        response = await self._request("DELETE", server, f"/kernels/{kernel_id}")
        self._check(response, f"Failed to delete kernel {kernel_id}")
        logger.info("Deleted kernel %s on %s", kernel_id, server)
