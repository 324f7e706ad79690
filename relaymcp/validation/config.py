"""
relaymcp Configuration - Configuration loading and validation.

This module provides the Config class for managing relaymcp configuration
from both global (~/.relaymcp/config.yaml) and local (.relaymcp/config.yaml)
sources, plus the per-provider server entries the client connects to.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


SUBPROCESS = "subprocess"
PUSH_STREAM = "push-stream"

_KIND_ALIASES = {
    "command": SUBPROCESS,
    "stdio": SUBPROCESS,
    "subprocess": SUBPROCESS,
    "sse": PUSH_STREAM,
    "push-stream": PUSH_STREAM,
    "push_stream": PUSH_STREAM,
}

_PROVIDER_NAME = re.compile(r"^[A-Za-z0-9_-]+$")

# provider name -> environment variable holding its API key
API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "groq": "GROQ_API_KEY",
    "together": "TOGETHER_API_KEY",
}

LOCAL_PROVIDERS = {"ollama"}


class ProviderConfig(BaseModel):
    """Configuration for a single tool provider (MCP server)."""

    name: str = ""
    kind: Literal["subprocess", "push-stream"] = Field(SUBPROCESS, alias="type")
    command: Optional[str] = None
    url: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = Field(True, alias="isOpen")

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = _KIND_ALIASES.get(value.strip().lower())
            if normalized is None:
                raise ValueError(
                    f"unknown server type '{value}' (expected one of: command, sse)"
                )
            return normalized
        return value

    @model_validator(mode="after")
    def _check_endpoint(self) -> "ProviderConfig":
        if self.name:
            check_provider_name(self.name)

        if self.kind == SUBPROCESS:
            if self.url is not None:
                raise ValueError("a command server must not define 'url'")
            if not self.command or not self.command.split():
                raise ValueError("a command server requires a non-empty 'command'")
        else:
            if self.command is not None:
                raise ValueError("an sse server must not define 'command'")
            if not self.url:
                raise ValueError("an sse server requires 'url'")
            if not self.url.startswith(("http://", "https://")):
                raise ValueError(f"sse url must be http(s): {self.url}")
        return self


class ClientSettings(BaseModel):
    """Settings for the conversation client."""

    max_tool_rounds: int = Field(1, ge=1)
    request_timeout: float = 60.0
    connect_timeout: float = 30.0
    max_tokens: int = 4096
    temperature: float = 0.7


class RelayConfig(BaseModel):
    """Complete relaymcp configuration schema."""

    model: str = "openai/gpt-4o-mini"
    client: ClientSettings = Field(default_factory=ClientSettings)
    servers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    providers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _name_servers(cls, data: Any) -> Any:
        # Server entries are keyed by name; copy the key into each entry.
        if isinstance(data, dict) and isinstance(data.get("servers"), dict):
            servers = {}
            for name, entry in data["servers"].items():
                if isinstance(entry, dict):
                    entry = {**entry, "name": name}
                servers[name] = entry
            data = {**data, "servers": servers}
        return data


def check_provider_name(name: str) -> None:
    """Reject provider names that could break qualified-name parsing."""
    if not name or not _PROVIDER_NAME.match(name):
        raise ValueError(
            f"invalid provider name '{name}': use letters, digits, '-' and '_'"
        )
    if "__" in name:
        raise ValueError(f"invalid provider name '{name}': '__' is reserved")


class Config:
    """
    relaymcp configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.relaymcp/config.yaml
    - Local: .relaymcp/config.yaml (project-specific), or an explicit path

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> servers = config.enabled_servers()
        >>> api_key = config.require_api_key("openai")
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".relaymcp"
    LOCAL_CONFIG_DIR = Path(".relaymcp")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[RelayConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from default locations.

        Args:
            path: Explicit config file used instead of the local one.

        Returns:
            Config instance with loaded configuration.
        """
        if path is not None and not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")

        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_path = Path(path) if path is not None else cls._find_local_config()
        local_config = cls._load_yaml(local_path)

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> RelayConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = RelayConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    @property
    def client(self) -> ClientSettings:
        return self.merged.client

    def set_model(self, model_name: str) -> None:
        """Override the chat model for this process (not persisted)."""
        self._local_config["model"] = model_name
        self._merged = None

    def enabled_servers(self, only: Optional[List[str]] = None) -> List[ProviderConfig]:
        """
        Return the provider configs flagged enabled, in file order.

        Args:
            only: Restrict to these names; a name given here is connected
                even when its entry is disabled.
        """
        servers = self.merged.servers
        if only:
            unknown = [name for name in only if name not in servers]
            if unknown:
                raise ConfigError(f"Unknown server(s): {', '.join(unknown)}")
            return [servers[name] for name in only]
        return [server for server in servers.values() if server.enabled]

    def get_server(self, name: str) -> ProviderConfig:
        server = self.merged.servers.get(name)
        if server is None:
            raise ConfigError(f"Server configuration not found for: {name}")
        return server

    def get_provider_settings(self, provider_name: str) -> Dict[str, Any]:
        """Get the free-form settings block for a chat provider."""
        return self.merged.providers.get(provider_name, {})

    def get_api_key(self, provider_name: str) -> Optional[str]:
        """
        Get API key for a provider.

        Checks config first, then environment variables.
        """
        api_key = self.get_provider_settings(provider_name).get("api_key")
        if api_key:
            return api_key

        env_var = API_KEY_ENV.get(provider_name)
        if env_var:
            return os.environ.get(env_var) or None

        return None

    def require_api_key(self, provider_name: str) -> Optional[str]:
        """Return the API key for a provider, failing fast when it is missing."""
        if provider_name in LOCAL_PROVIDERS:
            return self.get_api_key(provider_name)

        api_key = self.get_api_key(provider_name)
        if not api_key:
            env_var = API_KEY_ENV.get(provider_name, f"{provider_name.upper()}_API_KEY")
            raise ConfigError(f"{env_var} environment variable is required")
        return api_key

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    @classmethod
    def create_default_local(cls, directory: Path) -> Path:
        """Write a starter config.yaml under ``directory/.relaymcp``."""
        config_dir = directory / cls.LOCAL_CONFIG_DIR
        config_file = config_dir / "config.yaml"

        if config_file.exists():
            return config_file

        config_dir.mkdir(parents=True, exist_ok=True)

        default_config = {
            "model": "openai/gpt-4o-mini",
            "client": {"max_tool_rounds": 1},
            "servers": {
                "health-server": {
                    "type": "command",
                    "command": "python -m relaymcp.servers.health",
                    "enabled": True,
                },
                "exchange": {
                    "type": "command",
                    "command": "python -m relaymcp.servers.exchange",
                    "enabled": True,
                },
                "remote-health": {
                    "type": "sse",
                    "url": "http://localhost:3001/sse",
                    "enabled": False,
                },
            },
        }

        with open(config_file, "w") as f:
            yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

        return config_file
