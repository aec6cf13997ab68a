"""Tests for config.py - defaults, YAML overlay and discovery."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import (
    CONFIG_ENV,
    ConfigError,
    ServerConfig,
    find_config_file,
    load_config,
)
from server.httpd import Protocol


@pytest.fixture
def no_env(monkeypatch, tmp_path):
    """No $DUALSERVE_CONFIG and an empty data directory."""
    monkeypatch.delenv(CONFIG_ENV, raising=False)
    with patch("config.DEFAULT_DATA_DIR", tmp_path / "home"):
        yield


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestDefaults:
    """Built-in defaults."""

    def test_defaults(self, no_env):
        config = load_config()

        assert config.bind == "0.0.0.0"
        assert config.http_port == 3544
        assert config.https_port == 3545
        assert config.alias == "verifybyme"
        assert config.store_password == "vbm-pass"
        assert config.entry_password == "vbm-pass"
        assert config.hash_algorithm == "SHA256"
        assert config.signature_algorithm == "ECDSA"
        assert config.key_size == 256
        assert config.days_valid == 365 * 25
        assert config.keystore_path.name == "ssl.keystore"

    def test_passwords_not_in_repr(self):
        config = ServerConfig(store_password="s3cret", entry_password="t0ps3cret")
        assert "s3cret" not in repr(config)

    def test_keystore_path_expanded(self):
        config = ServerConfig(keystore_path="~/store")
        assert "~" not in str(config.keystore_path)


class TestYamlOverlay:
    """Loading values from a YAML file."""

    def test_overlay(self, tmp_path, no_env):
        path = _write(tmp_path, """
bind: 127.0.0.1
http:
  port: 8080
https:
  port: null
keystore:
  path: /tmp/other.keystore
  alias: device
  store_password: outer
  entry_password: inner
certificate:
  signature: RSA
  key_size: 2048
cors:
  allow_any_origin: false
  allowed_origins: [http://app.local]
  max_age: 60
shutdown_grace: 1.5
""")
        config = load_config(path)

        assert config.bind == "127.0.0.1"
        assert config.http_port == 8080
        assert config.https_port is None
        assert not config.wants_tls
        assert config.keystore_path == Path("/tmp/other.keystore")
        assert config.alias == "device"
        assert config.store_password == "outer"
        assert config.entry_password == "inner"
        assert config.signature_algorithm == "RSA"
        assert config.key_size == 2048
        assert config.hash_algorithm == "SHA256"
        assert config.cors_allowed_origins == ["http://app.local"]
        assert config.cors_max_age == 60
        assert config.shutdown_grace == 1.5

    def test_empty_file(self, tmp_path, no_env):
        assert load_config(_write(tmp_path, "")) == load_config()

    def test_unknown_section(self, tmp_path, no_env):
        with pytest.raises(ConfigError) as exc_info:
            load_config(_write(tmp_path, "database:\n  host: x\n"))
        assert "unknown section 'database'" in str(exc_info.value)
        assert exc_info.value.code == "E400"

    def test_unknown_key(self, tmp_path, no_env):
        with pytest.raises(ConfigError) as exc_info:
            load_config(_write(tmp_path, "http:\n  prot: 80\n"))
        assert "http.prot" in str(exc_info.value)

    def test_wrong_type(self, tmp_path, no_env):
        with pytest.raises(ConfigError) as exc_info:
            load_config(_write(tmp_path, "http:\n  port: eighty\n"))
        assert "'http.port' must be int or null" in str(exc_info.value)

    def test_boolean_port_rejected(self, tmp_path, no_env):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "https:\n  port: true\n"))

    def test_invalid_yaml(self, tmp_path, no_env):
        with pytest.raises(ConfigError) as exc_info:
            load_config(_write(tmp_path, "http: [unclosed\n"))
        assert "invalid YAML" in str(exc_info.value)

    def test_top_level_not_mapping(self, tmp_path, no_env):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "- a\n- b\n"))


class TestOverrides:
    """Keyword overrides passed by the CLI."""

    def test_override_wins_over_file(self, tmp_path, no_env):
        path = _write(tmp_path, "http:\n  port: 8080\n")
        config = load_config(path, http_port=9090)
        assert config.http_port == 9090

    def test_none_override_ignored(self, tmp_path, no_env):
        path = _write(tmp_path, "http:\n  port: 8080\n")
        config = load_config(path, http_port=None)
        assert config.http_port == 8080


class TestDiscovery:
    """Tests for find_config_file()."""

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(ConfigError):
            find_config_file(tmp_path / "missing.yaml")

    def test_env_var(self, tmp_path, monkeypatch):
        path = _write(tmp_path, "bind: 10.0.0.1\n")
        monkeypatch.setenv(CONFIG_ENV, str(path))

        assert find_config_file() == path
        assert load_config().bind == "10.0.0.1"

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV, str(tmp_path / "nope.yaml"))
        with pytest.raises(ConfigError):
            find_config_file()

    def test_default_location(self, tmp_path, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV, raising=False)
        (tmp_path / "config.yaml").write_text("bind: 10.0.0.2\n")
        with patch("config.DEFAULT_DATA_DIR", tmp_path):
            assert find_config_file() == tmp_path / "config.yaml"

    def test_nothing_found(self, no_env):
        assert find_config_file() is None


class TestDerived:
    """connector_specs() and cors_policy()."""

    def test_connector_specs(self):
        tls_context = MagicMock()
        config = ServerConfig(bind="127.0.0.1", http_port=1, https_port=2)
        specs = config.connector_specs(tls_context)

        assert [(s.protocol, s.port, s.host) for s in specs] == [
            (Protocol.PLAIN, 1, "127.0.0.1"),
            (Protocol.TLS, 2, "127.0.0.1"),
        ]
        assert specs[1].tls_context is tls_context

    def test_https_without_context(self):
        with pytest.raises(ConfigError):
            ServerConfig().connector_specs(None)

    def test_http_only(self):
        specs = ServerConfig(https_port=None).connector_specs(None)
        assert [s.protocol for s in specs] == [Protocol.PLAIN]

    def test_cors_policy(self):
        config = ServerConfig(
            cors_allow_any_origin=False,
            cors_allowed_origins=["http://a"],
            cors_allowed_methods=["get", "put"],
            cors_allowed_headers=["X-Token"],
        )
        policy = config.cors_policy()

        assert policy.origin_allowed("http://a")
        assert not policy.origin_allowed("http://b")
        assert policy.allowed_methods == ("GET", "PUT")
        assert policy.allowed_headers("x-token")
        assert not policy.allowed_headers("x-other")
