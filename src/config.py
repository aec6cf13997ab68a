"""Server configuration.

Configuration comes from built-in defaults, optionally overlaid by a YAML
file:

    bind: 0.0.0.0
    http:
      port: 3544          # null disables the plaintext connector
    https:
      port: 3545          # null disables the TLS connector
    keystore:
      path: ~/.dualserve/ssl.keystore
      alias: verifybyme
      store_password: vbm-pass
      entry_password: vbm-pass
    certificate:
      hash: SHA256
      signature: ECDSA
      key_size: 256
      days_valid: 9125
    cors:
      allow_any_origin: true
      allowed_origins: []
      allowed_headers: "*"
      max_age: null
    shutdown_grace: 5

Resolution order for the file:
1. explicit path (--config)
2. $DUALSERVE_CONFIG environment variable
3. ~/.dualserve/config.yaml
4. none (defaults only)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from server.httpd import (
    DEFAULT_BIND,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    ConnectorSpec,
    Protocol,
)
from server.keygen import DEFAULT_DAYS_VALID, DEFAULT_KEY_SIZE
from server.pipeline import DEFAULT_CORS_METHODS, CorsPolicy, header_predicate
from server.tls import TLSContext

CONFIG_ENV = "DUALSERVE_CONFIG"
DEFAULT_DATA_DIR = Path.home() / ".dualserve"
KEYSTORE_FILE_NAME = "ssl.keystore"

DEFAULT_ALIAS = "verifybyme"
DEFAULT_PASSWORD = "vbm-pass"


class ConfigError(Exception):
    """Configuration error."""

    def __init__(self, message: str, path: Optional[Path] = None):
        self.code = "E400"
        self.path = path
        self.message = f"{path}: {message}" if path else message
        super().__init__(f"{self.code}: {self.message}")


@dataclass
class ServerConfig:
    """Everything the bootstrap needs: ports, key store and CORS settings."""

    bind: str = DEFAULT_BIND
    http_port: Optional[int] = DEFAULT_HTTP_PORT
    https_port: Optional[int] = DEFAULT_HTTPS_PORT

    keystore_path: Path = field(default_factory=lambda: DEFAULT_DATA_DIR / KEYSTORE_FILE_NAME)
    alias: str = DEFAULT_ALIAS
    store_password: str = field(default=DEFAULT_PASSWORD, repr=False)
    entry_password: str = field(default=DEFAULT_PASSWORD, repr=False)

    hash_algorithm: str = "SHA256"
    signature_algorithm: str = "ECDSA"
    key_size: int = DEFAULT_KEY_SIZE
    days_valid: int = DEFAULT_DAYS_VALID

    cors_allow_any_origin: bool = True
    cors_allowed_origins: list = field(default_factory=list)
    cors_allowed_methods: list = field(default_factory=lambda: list(DEFAULT_CORS_METHODS))
    cors_allowed_headers: Any = "*"
    cors_max_age: Optional[int] = None

    shutdown_grace: float = DEFAULT_GRACE_PERIOD

    def __post_init__(self):
        self.keystore_path = Path(self.keystore_path).expanduser()

    @property
    def wants_tls(self) -> bool:
        return self.https_port is not None

    def cors_policy(self) -> CorsPolicy:
        return CorsPolicy(
            allow_any_origin=self.cors_allow_any_origin,
            allowed_origins=tuple(self.cors_allowed_origins),
            allowed_methods=tuple(m.upper() for m in self.cors_allowed_methods),
            allowed_headers=header_predicate(self.cors_allowed_headers),
            max_age=self.cors_max_age,
        )

    def connector_specs(self, tls_context: Optional[TLSContext] = None) -> list[ConnectorSpec]:
        """Connector list for the configured ports.

        Raises:
            ConfigError: If an https port is configured without a TLS context
        """
        specs = []
        if self.http_port is not None:
            specs.append(ConnectorSpec(Protocol.PLAIN, self.http_port, host=self.bind))
        if self.https_port is not None:
            if tls_context is None:
                raise ConfigError("https.port is set but no TLS context was provisioned")
            specs.append(
                ConnectorSpec(Protocol.TLS, self.https_port, host=self.bind, tls_context=tls_context)
            )
        return specs


# section -> {yaml key: (attribute, accepted types)}
_SCHEMA = {
    None: {
        "bind": ("bind", (str,)),
        "shutdown_grace": ("shutdown_grace", (int, float)),
    },
    "http": {
        "port": ("http_port", (int, type(None))),
    },
    "https": {
        "port": ("https_port", (int, type(None))),
    },
    "keystore": {
        "path": ("keystore_path", (str,)),
        "alias": ("alias", (str,)),
        "store_password": ("store_password", (str,)),
        "entry_password": ("entry_password", (str,)),
    },
    "certificate": {
        "hash": ("hash_algorithm", (str,)),
        "signature": ("signature_algorithm", (str,)),
        "key_size": ("key_size", (int,)),
        "days_valid": ("days_valid", (int,)),
    },
    "cors": {
        "allow_any_origin": ("cors_allow_any_origin", (bool,)),
        "allowed_origins": ("cors_allowed_origins", (list,)),
        "allowed_methods": ("cors_allowed_methods", (list,)),
        "allowed_headers": ("cors_allowed_headers", (str, list)),
        "max_age": ("cors_max_age", (int, type(None))),
    },
}


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config: {e.strerror or e}", path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", path) from e
    if not isinstance(data, dict):
        raise ConfigError("top level must be a mapping", path)
    return data


def _apply(values: dict, data: dict, path: Path) -> None:
    for key, value in data.items():
        if key in _SCHEMA[None]:
            _assign(values, _SCHEMA[None][key], key, value, path)
            continue
        if key not in _SCHEMA:
            raise ConfigError(f"unknown section '{key}'", path)
        section = value or {}
        if not isinstance(section, dict):
            raise ConfigError(f"section '{key}' must be a mapping", path)
        for sub_key, sub_value in section.items():
            if sub_key not in _SCHEMA[key]:
                raise ConfigError(f"unknown key '{key}.{sub_key}'", path)
            _assign(values, _SCHEMA[key][sub_key], f"{key}.{sub_key}", sub_value, path)


def _assign(values: dict, rule: tuple, name: str, value: Any, path: Path) -> None:
    attribute, types = rule
    # bool is an int subclass; only accept it where bool is expected
    if isinstance(value, bool) and bool not in types:
        raise ConfigError(f"'{name}' must not be a boolean", path)
    if not isinstance(value, types):
        expected = " or ".join("null" if t is type(None) else t.__name__ for t in types)
        raise ConfigError(f"'{name}' must be {expected}, got {type(value).__name__}", path)
    values[attribute] = value


def find_config_file(explicit: Optional[Path] = None) -> Optional[Path]:
    """Locate the config file.

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if explicit is not None:
        if not Path(explicit).exists():
            raise ConfigError(f"config file {explicit} does not exist")
        return Path(explicit)

    if env_path := os.environ.get(CONFIG_ENV):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV}={env_path} does not exist")

    default = DEFAULT_DATA_DIR / "config.yaml"
    if default.exists():
        return default
    return None


def load_config(path: Optional[Path] = None, **overrides: Any) -> ServerConfig:
    """Build a ServerConfig from defaults, the config file and overrides.

    Args:
        path: Explicit config file (discovered if None)
        overrides: Attribute values taking precedence over the file
            (None values are ignored)

    Returns:
        ServerConfig

    Raises:
        ConfigError: On unreadable files, unknown keys or wrong types
    """
    values: dict = {}
    config_file = find_config_file(path)
    if config_file is not None:
        _apply(values, _parse_yaml(config_file), config_file)

    values.update({k: v for k, v in overrides.items() if v is not None})
    return ServerConfig(**values)
