"""Configuration management for meshchat.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESHCHAT_SIGNALING_HTTP, MESHCHAT_POLL_INTERVAL,
   MESHCHAT_NEGOTIATION_TIMEOUT)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- meshchat.toml in current working directory
- ~/.meshchat/config.toml

Environment selection via MESHCHAT_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.development]
    signaling_http = "http://localhost:8001"
    poll_interval = 1.0

    [[environments.development.ice_servers]]
    urls = "stun:stun.l.google.com:19302"
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from meshchat.errors import ConfigurationError


@dataclass
class IceServerConfig:
    """A single STUN/TURN server handed to the connection primitive.

    Attributes:
        urls: Server URL (e.g. "stun:stun.l.google.com:19302").
        username: Optional TURN username.
        credential: Optional TURN credential.
    """

    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        """Keyword arguments for ``aiortc.RTCIceServer``."""
        data: Dict[str, Any] = {"urls": self.urls}
        if self.username:
            data["username"] = self.username
        if self.credential:
            data["credential"] = self.credential
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "IceServerConfig":
        return cls(
            urls=data.get("urls", ""),
            username=data.get("username"),
            credential=data.get("credential"),
        )


# Default production signaling server URL
DEFAULT_SIGNALING_HTTP = "http://localhost:8001"

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_NEGOTIATION_TIMEOUT = 30.0
DEFAULT_REQUEST_TIMEOUT = 10.0

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for meshchat."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_http: str = DEFAULT_SIGNALING_HTTP
        self.poll_interval: float = DEFAULT_POLL_INTERVAL
        self.negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT
        self.request_timeout: float = DEFAULT_REQUEST_TIMEOUT
        self.ice_servers: List[IceServerConfig] = [
            IceServerConfig(urls=url) for url in DEFAULT_ICE_SERVERS
        ]
        self.environment: str = "production"
        self.config_file: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESHCHAT_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESHCHAT_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESHCHAT_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. meshchat.toml in current working directory
        2. ~/.meshchat/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "meshchat.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".meshchat" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        An unreadable file or a bad value falls back to defaults with a warning.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)

            environments = self._config_data.get("environments", {})
            env_config = environments.get(self.environment, {})

            if not env_config:
                logger.debug(
                    f"No configuration found for environment '{self.environment}' "
                    f"in {config_file}, using defaults"
                )
                return

            self._apply_section(env_config)
            self.config_file = config_file

        except (OSError, tomllib.TOMLDecodeError, ConfigurationError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )

    def _apply_section(self, section: dict) -> None:
        """Apply one environment section of the config file."""
        if "signaling_http" in section:
            self.signaling_http = section["signaling_http"]
            logger.debug(f"Loaded signaling_http from config: {self.signaling_http}")

        for key in ("poll_interval", "negotiation_timeout", "request_timeout"):
            if key in section:
                setattr(self, key, _positive_float(key, section[key]))

        if "ice_servers" in section:
            servers = []
            for entry in section["ice_servers"]:
                try:
                    servers.append(IceServerConfig.from_dict(entry))
                except (ValueError, AttributeError) as e:
                    logger.warning(f"Skipping invalid ICE server entry {entry}: {e}")
            self.ice_servers = servers

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        http_override = os.getenv("MESHCHAT_SIGNALING_HTTP")
        if http_override:
            self.signaling_http = http_override
            logger.info(f"Overriding signaling_http from env: {self.signaling_http}")

        for key, env_name in (
            ("poll_interval", "MESHCHAT_POLL_INTERVAL"),
            ("negotiation_timeout", "MESHCHAT_NEGOTIATION_TIMEOUT"),
        ):
            value = os.getenv(env_name)
            if not value:
                continue
            try:
                setattr(self, key, _positive_float(key, value))
                logger.info(f"Overriding {key} from env: {getattr(self, key)}")
            except ConfigurationError as e:
                logger.warning(f"Ignoring {env_name}: {e}")

    def get_http_endpoint(self, endpoint: str) -> str:
        """Get a full HTTP API endpoint URL.

        Args:
            endpoint: API endpoint path (e.g., '/join', '/poll').

        Returns:
            Full endpoint URL.
        """
        base_url = self.signaling_http.rstrip("/")
        endpoint = endpoint.lstrip("/")
        return f"{base_url}/{endpoint}"

    def to_dict(self) -> Dict[str, Any]:
        """Effective settings, for display."""
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            "signaling_http": self.signaling_http,
            "poll_interval": self.poll_interval,
            "negotiation_timeout": self.negotiation_timeout,
            "request_timeout": self.request_timeout,
            "ice_servers": [server.urls for server in self.ice_servers],
        }


def _positive_float(key: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {value!r}")
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive, got {number}")
    return number


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
