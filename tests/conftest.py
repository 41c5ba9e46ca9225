"""Pytest fixtures shared across all test modules."""

import pytest

from notebook_remote.models import ServerConfig

from fakes import FakeConnector, FakeJupyterServer, FakeServerPool


@pytest.fixture
def server():
    return ServerConfig(host="localhost", port=8888)


@pytest.fixture
def other_server():
    return ServerConfig(host="localhost", port=9999)


@pytest.fixture
def fake_server(server):
    return FakeJupyterServer(server)


@pytest.fixture
def pool(fake_server):
    return FakeServerPool(fake_server)


@pytest.fixture
def manager(pool):
    return pool.manager()


@pytest.fixture
def connector():
    return FakeConnector()
