"""Configuration — Pydantic models for shellbridge settings."""

from __future__ import annotations

import json
import os
import shlex
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from shellbridge.errors import ConfigurationError


class ServerConfig(BaseModel):
    """SSH listener configuration."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=2222, ge=1, le=65535)
    host_keys: list[str] = Field(
        default_factory=lambda: ["ssh_host_ed25519_key"],
        description="Private host key files. Missing files are generated on start.",
    )
    authorized_keys: str | None = Field(
        default="~/.ssh/authorized_keys",
        description="Public keys allowed to log in. None disables authentication.",
    )


class SubsystemConfig(BaseModel):
    """A named subsystem and the command it runs.

    ``command`` is an executable plus arguments; leaving it unset runs the
    user's shell (``$SHELL`` or ``sh``) with ``-i``.
    """

    name: str
    command: list[str] | None = Field(default=None)

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: list[str] | None) -> list[str] | None:
        if value is not None and not value:
            raise ValueError("command must name an executable")
        return value


class ShellBridgeConfig(BaseModel):
    """Top-level shellbridge configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    subsystems: list[SubsystemConfig] = Field(
        default_factory=lambda: [SubsystemConfig(name="shell")]
    )

    def subsystem_commands(self) -> dict[str, list[str] | None]:
        return {s.name: s.command for s in self.subsystems}

    @classmethod
    def load(cls, config_path: str | None = None) -> ShellBridgeConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            SHELLBRIDGE_HOST               - Listen address
            SHELLBRIDGE_PORT               - Listen port
            SHELLBRIDGE_AUTHORIZED_KEYS    - authorized_keys path ("" disables auth)
            SHELLBRIDGE_SUBSYSTEM_COMMAND  - Command for the "shell" subsystem

        Raises:
            ConfigurationError: Unreadable file or invalid values.
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path:
            try:
                with open(config_path) as f:
                    config_data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigurationError(f"cannot read config {config_path}: {e}") from e

        server = config_data.get("server", {})

        env_host = os.environ.get("SHELLBRIDGE_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("SHELLBRIDGE_PORT")
        if env_port:
            server["port"] = env_port

        env_authorized_keys = os.environ.get("SHELLBRIDGE_AUTHORIZED_KEYS")
        if env_authorized_keys is not None:
            server["authorized_keys"] = env_authorized_keys or None

        if server:
            config_data["server"] = server

        env_command = os.environ.get("SHELLBRIDGE_SUBSYSTEM_COMMAND")
        if env_command:
            subsystems = [
                s
                for s in config_data.get("subsystems", [])
                if s.get("name") != "shell"
            ]
            subsystems.append({"name": "shell", "command": shlex.split(env_command)})
            config_data["subsystems"] = subsystems

        try:
            return cls.model_validate(config_data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid configuration: {e}") from e
