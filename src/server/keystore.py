"""Password-protected key store for the server identity.

The store file is a small YAML envelope around an encrypted payload:

    format: dualserve-keystore/1
    kdf: {algorithm: pbkdf2-sha256, salt: <base64>, iterations: <n>}
    payload: <Fernet token>

The payload is encrypted with a key derived from the store password and
decrypts to a mapping of alias -> entry. Each entry is a PKCS#12 bundle
(private key + certificate, alias as friendly name) encrypted with its own
entry password, so the store password alone does not expose any key.
"""

import base64
import datetime
import hmac
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import pkcs12

from server.errors import (
    AliasNotFoundError,
    AuthenticationError,
    StoreCorruptError,
    StoreIOError,
)
from server.keygen import Identity, identity_from_material

logger = logging.getLogger(__name__)

STORE_FORMAT = "dualserve-keystore/1"
KDF_ALGORITHM = "pbkdf2-sha256"
KDF_ITERATIONS = 200_000
SALT_SIZE = 16


@dataclass
class KeyStore:
    """An opened key store: entries are still encrypted with their entry passwords."""

    path: Path
    store_password: str = field(repr=False)
    entries: dict = field(default_factory=dict, repr=False)

    def aliases(self) -> list[str]:
        return sorted(self.entries)

    def contains(self, alias: str) -> bool:
        return alias in self.entries

    def get_entry(self, alias: str) -> bytes:
        """Return the encrypted PKCS#12 bundle stored under alias.

        Raises:
            AliasNotFoundError: If alias is not in the store
        """
        try:
            return base64.b64decode(self.entries[alias]["pkcs12"])
        except KeyError:
            raise AliasNotFoundError(alias, self.path) from None

    def verify_store_password(self, password: str) -> bool:
        return hmac.compare_digest(
            self.store_password.encode("utf-8"), password.encode("utf-8")
        )


def _derive_fernet(password: str, salt: bytes, iterations: int) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    key = kdf.derive(password.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(key))


def _encode_entry(alias: str, identity: Identity, entry_password: str) -> dict:
    bundle = pkcs12.serialize_key_and_certificates(
        name=alias.encode("utf-8"),
        key=identity.private_key,
        cert=identity.certificate,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(
            entry_password.encode("utf-8")
        ),
    )
    return {
        "pkcs12": base64.b64encode(bundle).decode("ascii"),
        "created": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
    }


def _write_atomic(path: Path, content: bytes) -> None:
    """Write content to a temp file next to path, then rename it into place."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _save(store: KeyStore) -> None:
    salt = os.urandom(SALT_SIZE)
    fernet = _derive_fernet(store.store_password, salt, KDF_ITERATIONS)
    payload = yaml.safe_dump({"entries": store.entries}, sort_keys=True).encode("utf-8")
    document = {
        "format": STORE_FORMAT,
        "kdf": {
            "algorithm": KDF_ALGORITHM,
            "salt": base64.b64encode(salt).decode("ascii"),
            "iterations": KDF_ITERATIONS,
        },
        "payload": fernet.encrypt(payload).decode("ascii"),
    }
    content = yaml.safe_dump(document, sort_keys=False).encode("utf-8")

    try:
        store.path.parent.mkdir(parents=True, exist_ok=True)
        _write_atomic(store.path, content)
    except OSError as e:
        raise StoreIOError(store.path, e.strerror or str(e)) from e


def persist(
    store_path: Path,
    store_password: str,
    alias: str,
    identity: Identity,
    entry_password: str,
) -> KeyStore:
    """Write identity under alias into the store at store_path.

    An existing store is opened with store_password and the alias is added
    or replaced; otherwise a new store is created.

    Args:
        store_path: Key store file
        store_password: Password protecting the whole store
        alias: Entry name
        identity: Key pair and certificate to store
        entry_password: Password protecting this entry's private key

    Returns:
        KeyStore handle reflecting the written file

    Raises:
        StoreCorruptError: If an existing store cannot be opened
        StoreIOError: On filesystem failure
    """
    store_path = Path(store_path)
    if store_path.exists():
        store = load(store_path, store_password)
    else:
        store = KeyStore(path=store_path, store_password=store_password)

    store.entries[alias] = _encode_entry(alias, identity, entry_password)
    _save(store)
    logger.info("Saved '%s' to key store %s", alias, store_path)
    return store


def load(store_path: Path, store_password: str) -> KeyStore:
    """Open the store at store_path with store_password.

    Raises:
        StoreIOError: If the file cannot be read
        StoreCorruptError: If the content is invalid or the password is wrong
    """
    store_path = Path(store_path)
    try:
        raw = store_path.read_bytes()
    except OSError as e:
        raise StoreIOError(store_path, e.strerror or str(e)) from e

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise StoreCorruptError(store_path, f"not a key store ({e.__class__.__name__})") from e

    if not isinstance(document, dict) or document.get("format") != STORE_FORMAT:
        raise StoreCorruptError(store_path, f"unrecognized format (expected {STORE_FORMAT})")

    kdf = document.get("kdf") or {}
    try:
        if kdf.get("algorithm") != KDF_ALGORITHM:
            raise ValueError(f"unsupported kdf {kdf.get('algorithm')!r}")
        salt = base64.b64decode(kdf["salt"], validate=True)
        iterations = int(kdf["iterations"])
        token = document["payload"].encode("ascii")
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise StoreCorruptError(store_path, f"malformed header: {e}") from e

    try:
        payload = _derive_fernet(store_password, salt, iterations).decrypt(token)
    except InvalidToken:
        raise StoreCorruptError(
            store_path, "wrong store password or tampered content"
        ) from None

    try:
        content = yaml.safe_load(payload) or {}
    except yaml.YAMLError as e:
        raise StoreCorruptError(store_path, f"payload is not YAML ({e.__class__.__name__})") from e
    if not isinstance(content, dict):
        raise StoreCorruptError(store_path, "payload is not a mapping")

    entries = content.get("entries") or {}
    if not isinstance(entries, dict):
        raise StoreCorruptError(store_path, "entries section is not a mapping")

    logger.debug("Opened key store %s (%d entries)", store_path, len(entries))
    return KeyStore(path=store_path, store_password=store_password, entries=entries)


def load_identity(store: KeyStore, alias: str, entry_password: str) -> Identity:
    """Decrypt the entry stored under alias.

    Raises:
        AliasNotFoundError: If alias is not in the store
        AuthenticationError: If entry_password does not decrypt the entry
    """
    bundle = store.get_entry(alias)
    try:
        key, cert, _ = pkcs12.load_key_and_certificates(bundle, entry_password.encode("utf-8"))
    except ValueError:
        raise AuthenticationError(
            f"Entry password for '{alias}' in {store.path} is incorrect"
        ) from None
    if key is None or cert is None:
        raise AuthenticationError(f"Entry '{alias}' in {store.path} holds no key pair")
    return identity_from_material(alias, key, cert)


def ensure_identity(
    store_path: Path,
    store_password: str,
    alias: str,
    entry_password: str,
    factory: Callable[[], Identity],
) -> KeyStore:
    """Create-or-reuse the identity stored under alias.

    An existing store holding alias is reused as-is, which keeps the
    certificate stable across restarts. A store that cannot be opened is
    reported, never overwritten.

    Args:
        store_path: Key store file
        store_password: Password protecting the whole store
        alias: Entry name
        entry_password: Password protecting the entry
        factory: Called to generate the identity when it does not exist yet

    Returns:
        KeyStore handle containing alias
    """
    store_path = Path(store_path)
    if store_path.exists():
        existing = load(store_path, store_password)
        if existing.contains(alias):
            logger.info("Using existing key store: %s", store_path)
            return existing
        logger.info("Key store %s has no entry '%s', generating one", store_path, alias)
    else:
        logger.info("Key store %s not found, generating identity '%s'", store_path, alias)

    identity = factory()
    return persist(store_path, store_password, alias, identity, entry_password)
