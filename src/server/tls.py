"""TLS context construction for the server.

Turns a key store entry into an ssl.SSLContext for the TLS connector. The
key and certificate are handed to OpenSSL through an anonymous in-memory
file and are never written back to disk in clear text.
"""

import logging
import os
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from server.errors import AuthenticationError, CryptoError
from server.keygen import PrivateKey, format_fingerprint
from server.keystore import KeyStore, load_identity

logger = logging.getLogger(__name__)


@dataclass
class TLSContext:
    """Server-side TLS context built from a stored identity."""

    alias: str
    certificate: x509.Certificate
    private_key: PrivateKey = field(repr=False)
    ssl_context: ssl.SSLContext = field(repr=False)

    @property
    def fingerprint(self) -> str:
        return format_fingerprint(self.certificate)


def _pem_chain(certificate: x509.Certificate, private_key: PrivateKey, password: bytes) -> bytes:
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    return certificate.public_bytes(serialization.Encoding.PEM) + key_pem


def _load_chain(context: ssl.SSLContext, chain: bytes, password: bytes) -> None:
    """Load a PEM cert+key chain into context without a named file on disk.

    Uses memfd_create where available. Elsewhere the chain goes through a
    private temporary file that is removed right after loading; the key in
    it stays passphrase-encrypted.
    """
    if hasattr(os, "memfd_create"):
        fd = os.memfd_create("dualserve-tls", 0)
        try:
            os.write(fd, chain)
            context.load_cert_chain(f"/proc/self/fd/{fd}", password=password)
        finally:
            os.close(fd)
        return

    with tempfile.TemporaryDirectory(prefix="dualserve-tls-") as tmp_dir:
        chain_path = Path(tmp_dir) / "chain.pem"
        chain_path.touch(mode=0o600)
        chain_path.write_bytes(chain)
        try:
            context.load_cert_chain(str(chain_path), password=password)
        finally:
            chain_path.unlink(missing_ok=True)


def build(
    store: KeyStore,
    alias: str,
    store_password: str,
    entry_password: str,
) -> TLSContext:
    """Build a TLS server context from the entry stored under alias.

    Args:
        store: Opened key store
        alias: Entry holding the server key and certificate
        store_password: Password of the store
        entry_password: Password of the entry

    Returns:
        TLSContext ready to wrap accepted connections

    Raises:
        AuthenticationError: If either password is wrong
        AliasNotFoundError: If alias is not in the store
        CryptoError: If OpenSSL rejects the key material
    """
    if not store.verify_store_password(store_password):
        raise AuthenticationError(f"Store password for {store.path} is incorrect")

    identity = load_identity(store, alias, entry_password)

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2

    # One-off passphrase for the in-memory hand-off only
    password = os.urandom(16).hex().encode("ascii")
    try:
        _load_chain(context, _pem_chain(identity.certificate, identity.private_key, password), password)
    except ssl.SSLError as e:
        raise CryptoError(f"TLS engine rejected key material for '{alias}': {e}") from e

    tls_context = TLSContext(
        alias=alias,
        certificate=identity.certificate,
        private_key=identity.private_key,
        ssl_context=context,
    )
    logger.info("TLS context ready for '%s' (SHA256 %s)", alias, tls_context.fingerprint)
    return tls_context
