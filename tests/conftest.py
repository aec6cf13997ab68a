"""Shared pytest fixtures for dualserve tests."""

import http.client
import ssl
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ServerConfig  # noqa: E402
from server.keygen import generate  # noqa: E402
from server.keystore import persist  # noqa: E402

STORE_PASSWORD = "store-secret"
ENTRY_PASSWORD = "entry-secret"
ALIAS = "testalias"


@pytest.fixture(scope="session")
def identity():
    """One ECDSA P-256 identity shared by tests that only read it."""
    return generate(
        alias=ALIAS,
        hash_alg="SHA256",
        sign_alg="ECDSA",
        key_size=256,
        password=ENTRY_PASSWORD,
        days_valid=30,
        hostnames=["localhost"],
        ip_addresses=["127.0.0.1"],
    )


@pytest.fixture
def store_path(tmp_path):
    """Key store location inside a not-yet-existing directory."""
    return tmp_path / "data" / "ssl.keystore"


@pytest.fixture
def populated_store(store_path, identity):
    """Key store holding the shared identity under ALIAS."""
    return persist(store_path, STORE_PASSWORD, ALIAS, identity, ENTRY_PASSWORD)


@pytest.fixture
def server_config(store_path):
    """Config with ephemeral ports on loopback and a temp key store."""
    return ServerConfig(
        bind="127.0.0.1",
        http_port=0,
        https_port=0,
        keystore_path=store_path,
        alias=ALIAS,
        store_password=STORE_PASSWORD,
        entry_password=ENTRY_PASSWORD,
        days_valid=30,
        shutdown_grace=2.0,
    )


def http_get(port, path="/", method="GET", headers=None, tls=False, timeout=5):
    """Send one request to 127.0.0.1:port; returns (response, body, peer_cert_der)."""
    if tls:
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        conn = http.client.HTTPSConnection("127.0.0.1", port, timeout=timeout, context=context)
    else:
        conn = http.client.HTTPConnection("127.0.0.1", port, timeout=timeout)
    try:
        conn.request(method, path, headers=headers or {})
        # getresponse() drops conn.sock when the server closes the connection
        peer_cert = conn.sock.getpeercert(binary_form=True) if tls else None
        response = conn.getresponse()
        body = response.read()
        return response, body, peer_cert
    finally:
        conn.close()
