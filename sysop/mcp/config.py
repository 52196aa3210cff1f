"""
sysop.mcp.config — The MCP server table (``~/.sysop/mcp.yaml``).

Example file::

    servers:
      filesystem:
        transport: stdio
        command: npx
        args: ["-y", "@modelcontextprotocol/server-filesystem", "/srv/data"]
        env: {NODE_ENV: production}
      tracker:
        transport: http
        url: https://mcp.example.com/mcp
        headers: {Authorization: "Bearer ..."}

Server names are unique keys; a file that repeats a name is rejected as a
configuration error.  Every management operation (add, remove, env,
header) saves the file immediately.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from sysop.config import mcp_config_path
from sysop.errors import ConfigError, McpServerExists, McpServerNotFound, PersistenceError


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise ConfigError(f"duplicate key '{key}' (line {key_node.start_mark.line + 1})")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class McpServerConfig(BaseModel):
    """One configured MCP server."""

    name: str = ""
    transport: Literal["stdio", "http"] = "stdio"
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_transport(self) -> McpServerConfig:
        if self.transport == "stdio" and not self.command:
            raise ValueError("stdio servers need a 'command'")
        if self.transport == "http" and not self.url:
            raise ValueError("http servers need a 'url'")
        return self

    def describe(self) -> str:
        if self.transport == "http":
            return f"http {self.url}"
        return " ".join([self.command or "", *self.args]).strip()


class McpConfig(BaseModel):
    """All configured servers, keyed by name."""

    servers: dict[str, McpServerConfig] = Field(default_factory=dict)

    # ---- persistence -----------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> McpConfig:
        """Read the server table; a missing file means no servers.

        Raises
        ------
        ConfigError
            Malformed YAML, duplicate server names or invalid entries.
        """
        path = path or mcp_config_path()
        if not path.exists():
            return cls()
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = yaml.load(fh, Loader=_UniqueKeyLoader) or {}
        except ConfigError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc

        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        servers = raw.get("servers") or {}
        if not isinstance(servers, dict):
            raise ConfigError(f"{path}: 'servers' must be a mapping")
        try:
            return cls(servers={
                name: McpServerConfig(**{**(entry or {}), "name": name})
                for name, entry in servers.items()
            })
        except (ValidationError, TypeError) as exc:
            raise ConfigError(f"{path}: {exc}") from exc

    def save(self, path: Path | None = None) -> Path:
        path = path or mcp_config_path()
        data = {
            "servers": {
                name: server.model_dump(exclude={"name"}, exclude_defaults=True)
                | {"transport": server.transport}
                for name, server in self.servers.items()
            }
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                yaml.safe_dump(data, fh, sort_keys=False)
        except OSError as exc:
            raise PersistenceError(f"Cannot write {path}: {exc}") from exc
        return path

    # ---- lookups ---------------------------------------------------------

    def get(self, name: str) -> McpServerConfig:
        try:
            return self.servers[name]
        except KeyError:
            raise McpServerNotFound(name) from None

    # ---- management operations (each one persists) ----------------------

    def add_server(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        path: Path | None = None,
    ) -> McpServerConfig:
        """Register a stdio server."""
        if name in self.servers:
            raise McpServerExists(name)
        server = McpServerConfig(
            name=name, transport="stdio", command=command, args=list(args or []), env=dict(env or {})
        )
        self.servers[name] = server
        self.save(path)
        return server

    def add_http_server(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        path: Path | None = None,
    ) -> McpServerConfig:
        """Register an HTTP server."""
        if name in self.servers:
            raise McpServerExists(name)
        server = McpServerConfig(name=name, transport="http", url=url, headers=dict(headers or {}))
        self.servers[name] = server
        self.save(path)
        return server

    def remove_server(self, name: str, path: Path | None = None) -> None:
        self.get(name)
        del self.servers[name]
        self.save(path)

    def set_env(self, name: str, key: str, value: str, path: Path | None = None) -> None:
        self.get(name).env[key] = value
        self.save(path)

    def remove_env(self, name: str, key: str, path: Path | None = None) -> bool:
        """Drop one environment variable; returns False if it was not set."""
        removed = self.get(name).env.pop(key, None) is not None
        if removed:
            self.save(path)
        return removed

    def set_header(self, name: str, key: str, value: str, path: Path | None = None) -> None:
        server = self.get(name)
        if server.transport != "http":
            raise ConfigError(f"'{name}' is a stdio server; headers apply to http servers only")
        server.headers[key] = value
        self.save(path)
