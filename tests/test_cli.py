"""Tests for cli.py - subcommand dispatch and output."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cli import main, probe
from conftest import ALIAS, STORE_PASSWORD
from config import CONFIG_ENV
from server.errors import BindError


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config with a temp key store and fast 256-bit ECDSA keys."""
    monkeypatch.delenv(CONFIG_ENV, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(f"""
http:
  port: 18080
https:
  port: 18443
keystore:
  path: {tmp_path / "ssl.keystore"}
  alias: {ALIAS}
  store_password: {STORE_PASSWORD}
""")
    return path


class TestMain:
    """Tests for main() dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert "Usage: dualserve" in out
        assert "serve" in out

    def test_help(self, capsys):
        assert main(["--help"]) == 0
        assert "Commands:" in capsys.readouterr().out

    def test_unknown_command(self, capsys):
        assert main(["frobnicate"]) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out


class TestUrls:
    """Tests for the urls subcommand."""

    def test_text(self, config_file, capsys):
        assert main(["urls", "-c", str(config_file), "--host", "device.local"]) == 0
        out = capsys.readouterr().out.split()
        assert out == ["http://device.local:18080", "https://device.local:18443"]

    def test_json_with_port_override(self, config_file, capsys):
        rc = main(["urls", "-c", str(config_file), "--host", "h", "--http-port", "9000", "--json"])

        assert rc == 0
        assert json.loads(capsys.readouterr().out) == {
            "http": "http://h:9000",
            "https": "https://h:18443",
        }

    def test_bad_config(self, tmp_path, capsys):
        assert main(["urls", "-c", str(tmp_path / "missing.yaml")]) == 1


class TestFingerprint:
    """Tests for the fingerprint subcommand."""

    def test_creates_then_reuses(self, config_file, tmp_path, capsys):
        assert main(["fingerprint", "-c", str(config_file), "--json"]) == 0
        first = json.loads(capsys.readouterr().out)
        assert (tmp_path / "ssl.keystore").exists()

        assert main(["fingerprint", "-c", str(config_file), "--json"]) == 0
        second = json.loads(capsys.readouterr().out)

        assert first["fingerprint"] == second["fingerprint"]
        assert first["alias"] == ALIAS
        assert first["subject"] == f"CN={ALIAS}"

    def test_wrong_store_password(self, config_file, capsys):
        assert main(["fingerprint", "-c", str(config_file)]) == 0
        config_file.write_text(config_file.read_text().replace(STORE_PASSWORD, "wrong"))

        assert main(["fingerprint", "-c", str(config_file)]) == 1


class TestServe:
    """Tests for the serve subcommand."""

    def test_runs_until_stopped(self, config_file, capsys):
        process = MagicMock()
        process.urls.return_value = ["http://h:18080", "https://h:18443"]
        with patch("cli.bootstrap", return_value=process), patch("cli.signal.signal"):
            assert main(["serve", "-c", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert "Server running at http://h:18080" in out
        assert "Server running at https://h:18443" in out
        process.wait.assert_called_once()
        process.stop.assert_called()

    def test_keyboard_interrupt_stops(self, config_file):
        process = MagicMock()
        process.urls.return_value = []
        process.wait.side_effect = KeyboardInterrupt
        with patch("cli.bootstrap", return_value=process), patch("cli.signal.signal"):
            assert main(["serve", "-c", str(config_file)]) == 0
        process.stop.assert_called()

    def test_bind_failure(self, config_file):
        with patch("cli.bootstrap", side_effect=BindError(18080, "Address already in use")):
            assert main(["serve", "-c", str(config_file)]) == 1

    def test_bind_override(self, config_file):
        with patch("cli.bootstrap", side_effect=BindError(18080, "x")) as mock_bootstrap:
            main(["serve", "-c", str(config_file), "--bind", "127.0.0.1"])
        assert mock_bootstrap.call_args[0][0].bind == "127.0.0.1"


class TestProbe:
    """Tests for probe() and the probe subcommand."""

    @patch("cli.requests.get")
    def test_probe_ok(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200, text="Hello World")

        result = probe("https://127.0.0.1:3545/")

        assert result == {"url": "https://127.0.0.1:3545/", "ok": True, "status": 200, "body": "Hello World"}
        assert mock_get.call_args[1]["verify"] is False

    @patch("cli.requests.get")
    def test_probe_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        result = probe("http://127.0.0.1:1/")

        assert result["ok"] is False
        assert "Cannot connect" in result["error"]

    @patch("cli.requests.get")
    def test_probe_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        assert probe("http://127.0.0.1:1/")["error"] == "Timeout"

    @patch("cli.requests.get")
    def test_subcommand_all_ok(self, mock_get, config_file, capsys):
        mock_get.return_value = MagicMock(status_code=200, text="Hello World")

        assert main(["probe", "-c", str(config_file), "--json"]) == 0
        results = json.loads(capsys.readouterr().out)
        assert [r["url"] for r in results] == [
            "http://127.0.0.1:18080/",
            "https://127.0.0.1:18443/",
        ]

    @patch("cli.requests.get")
    def test_subcommand_failure(self, mock_get, config_file, capsys):
        mock_get.side_effect = [
            MagicMock(status_code=200, text="Hello World"),
            requests.exceptions.ConnectionError("refused"),
        ]
        assert main(["probe", "-c", str(config_file)]) == 1
        assert "FAIL" in capsys.readouterr().out
