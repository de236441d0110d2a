"""
Configuration system for rtensor clients.

Loads YAML configs that control connection behavior: timeouts, backpressure,
reconnect policy. Anything not set in the file keeps its default.
"""

import yaml
import os
from typing import Dict, Optional, Any
from dataclasses import dataclass, field, fields


DEFAULT_ENDPOINT = "tcp://localhost:3000"

# Request classes, each with its own timeout
REQUEST_CLASSES = ('create', 'compute', 'transfer')


@dataclass
class ConnectionConfig:
    """Settings for one connection to a remote executor."""
    connect_timeout: float = 5.0  # Seconds to wait for the handshake
    max_pending: int = 1024  # In-flight requests before dispatch blocks
    poll_interval: float = 0.05  # I/O loop receive timeout (seconds)
    max_protocol_errors: int = 3  # Consecutive bad messages before the channel is dropped
    close_timeout: float = 10.0  # Seconds close() waits for in-flight requests
    heartbeat_interval: float = 1.0  # Transport heartbeat interval (seconds)
    heartbeat_timeout: float = 5.0  # Peer considered dead after this silence (seconds)
    keepalive_interval: Optional[float] = 30.0  # Idle seconds before a HELLO keeps the server session alive


@dataclass
class ReconnectConfig:
    """Bounded exponential backoff after a transport drop."""
    max_attempts: int = 5
    backoff: float = 0.1  # Delay before the first attempt (seconds)
    backoff_max: float = 5.0  # Upper bound for a single delay

    def delay(self, attempt: int) -> float:
        """Delay before the given (0-indexed) attempt."""
        return min(self.backoff * (2 ** attempt), self.backoff_max)


def _default_timeouts():
    return {'create': 30.0, 'compute': 60.0, 'transfer': 120.0}


@dataclass
class ClientConfig:
    """Full client configuration."""
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    timeouts: Dict[str, Optional[float]] = field(default_factory=_default_timeouts)
    cancel_on_timeout: bool = True  # Ask the server to skip requests we gave up on

    def timeout_for(self, request_class: str) -> Optional[float]:
        """Timeout for a request class (None = wait forever)."""
        if request_class not in self.timeouts:
            raise ValueError(f"Unknown request class: {request_class}")
        return self.timeouts[request_class]


def _parse_section(cls, section: Dict[str, Any], name: str):
    """Build a config dataclass from a YAML section, rejecting unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' config: {sorted(unknown)}")
    return cls(**section)


def parse_config(raw_config: Optional[Dict[str, Any]]) -> ClientConfig:
    """Parse a client configuration from a dict (e.g. loaded from YAML)."""
    config = ClientConfig()
    if not raw_config:
        return config

    unknown = set(raw_config) - {'connection', 'reconnect', 'timeouts', 'cancel_on_timeout'}
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")

    if 'connection' in raw_config:
        config.connection = _parse_section(ConnectionConfig, raw_config['connection'] or {}, 'connection')
    if 'reconnect' in raw_config:
        config.reconnect = _parse_section(ReconnectConfig, raw_config['reconnect'] or {}, 'reconnect')
    if 'timeouts' in raw_config:
        timeouts = raw_config['timeouts'] or {}
        unknown = set(timeouts) - set(REQUEST_CLASSES)
        if unknown:
            raise ValueError(f"Unknown request classes in 'timeouts' config: {sorted(unknown)}")
        config.timeouts.update(timeouts)
    if 'cancel_on_timeout' in raw_config:
        config.cancel_on_timeout = bool(raw_config['cancel_on_timeout'])

    if config.connection.max_pending < 1:
        raise ValueError("connection.max_pending must be at least 1")
    if config.reconnect.max_attempts < 0:
        raise ValueError("reconnect.max_attempts must not be negative")

    return config


class Config:
    """
    Global configuration manager for rtensor.

    Example config.yaml:
    ```
    connection:
      max_pending: 256
      connect_timeout: 2.0

    reconnect:
      max_attempts: 3
      backoff: 0.5

    timeouts:
      compute: 10.0
      transfer: null   # wait forever
    ```
    """

    def __init__(self):
        self.client = ClientConfig()
        self._config_file: Optional[str] = None

    def load(self, config_file: str):
        """Load configuration from YAML file."""
        if not os.path.exists(config_file):
            raise FileNotFoundError(f"Config file not found: {config_file}")

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f)

        self.client = parse_config(raw_config)
        self._config_file = config_file

    def load_from_env(self, env_var: str = 'RTENSOR_CONFIG'):
        """
        Load configuration from environment variable.

        Args:
            env_var: Environment variable name (default: RTENSOR_CONFIG)
        """
        config_path = os.environ.get(env_var, None)
        if config_path:
            from rtensor.debug import verbose_print
            verbose_print(f"rtensor: Loading config from {config_path}")
            self.load(config_path)

    def clear(self):
        """Reset to defaults."""
        self.client = ClientConfig()
        self._config_file = None


# Global config instance
_config = Config()


def load_config(config_file: str):
    """Load configuration from YAML file."""
    _config.load(config_file)


def load_config_from_env(env_var: str = 'RTENSOR_CONFIG'):
    """Load configuration from the file named by an environment variable, if set."""
    _config.load_from_env(env_var)


def get_config() -> ClientConfig:
    """Get the active client configuration."""
    return _config.client


def default_endpoint() -> str:
    """Endpoint used when none is given: REMOTE_BACKEND_URL or tcp://localhost:3000."""
    return os.environ.get('REMOTE_BACKEND_URL', DEFAULT_ENDPOINT)


def default_port() -> int:
    """Reference server port: REMOTE_BACKEND_PORT or 3000."""
    port = os.environ.get('REMOTE_BACKEND_PORT', '3000')
    try:
        return int(port)
    except ValueError:
        raise ValueError(f"Invalid port, got {port}")
