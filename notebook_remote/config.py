"""
ConfigStore: persisted settings and the list of known kernel servers.
"""

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from notebook_remote.errors import ConfigurationError
from notebook_remote.models import ServerConfig, url_without_protocol
from notebook_remote.protocol import DEFAULT_USERNAME


HOME_ENV_VAR = "NOTEBOOK_REMOTE_HOME"
CONFIG_FILENAME = "config.json"


class Settings(BaseModel):
    """User settings for notebook-remote."""
    servers: list[ServerConfig] = Field(default_factory=list)
    execution_timeout: float = 30.0
    request_timeout: float = 10.0
    username: str = DEFAULT_USERNAME

    def find_server(self, host: str, port: int) -> Optional[ServerConfig]:
        key = f"{url_without_protocol(host)}:{port}"
        for server in self.servers:
            if server.key == key:
                return server
        return None


def parse_server_address(address: str, token: str = "") -> ServerConfig:
    """
    Parse ``host:port`` (optionally with an http(s):// prefix).

    Raises:
        ConfigurationError: if the port is missing or not a number
    """
    address = address.strip().rstrip("/")
    host, sep, port = address.rpartition(":")
    if not sep or not host or url_without_protocol(host) == "":
        raise ConfigurationError(f"Invalid server address '{address}'. Expected HOST:PORT.")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigurationError(f"Invalid port in server address '{address}'.") from None
    return ServerConfig(host=host, port=port_number, token=token)


def default_config_dir() -> Path:
    env_dir = os.environ.get(HOME_ENV_VAR)
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".notebook_remote"


class ConfigStore:
    """Loads and saves Settings as JSON in the config directory."""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Args:
            config_dir: Directory holding config.json. Defaults to
                $NOTEBOOK_REMOTE_HOME or ~/.notebook_remote
        """
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()

    @property
    def path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    def load(self) -> Settings:
        """Load settings, or defaults if no config file exists yet."""
        if not self.path.exists():
            return Settings()
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return Settings.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Invalid config file {self.path}: {e}") from e

    def save(self, settings: Settings) -> Path:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(settings.model_dump(), f, indent=2)
        return self.path

    def add_server(self, server: ServerConfig) -> Settings:
        """Add a server, replacing one with the same host and port."""
        settings = self.load()
        settings.servers = [s for s in settings.servers if not s.same_server(server)]
        settings.servers.append(server)
        self.save(settings)
        return settings

    def remove_server(self, host: str, port: int) -> bool:
        """Remove a server. Returns False if it was not configured."""
        settings = self.load()
        existing = settings.find_server(host, port)
        if existing is None:
            return False
        settings.servers = [s for s in settings.servers if not s.same_server(existing)]
        self.save(settings)
        return True
