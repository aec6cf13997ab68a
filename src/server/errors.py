"""Error taxonomy for server startup.

Every startup failure carries a code and a message naming the stage and
the resource involved, so it can be diagnosed from the log alone.
"""

from pathlib import Path
from typing import Optional


class ServerError(Exception):
    """Base exception for server errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ParameterError(ServerError):
    """Invalid key generation or connector parameters."""

    def __init__(self, message: str):
        super().__init__("E100", message)


class CryptoError(ServerError):
    """Cryptographic provider cannot satisfy the request."""

    def __init__(self, message: str):
        super().__init__("E101", message)


class StoreIOError(ServerError):
    """Filesystem failure while reading or writing the key store."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__("E200", f"Key store I/O failed for {path}: {reason}")


class StoreCorruptError(ServerError):
    """Key store exists but cannot be opened."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__("E201", f"Key store {path} cannot be opened: {reason}")


class AliasNotFoundError(ServerError):
    """Alias not present in the key store."""

    def __init__(self, alias: str, path: Optional[Path] = None):
        self.alias = alias
        where = f" in {path}" if path else ""
        super().__init__("E202", f"Alias not found{where}: {alias}")


class AuthenticationError(ServerError):
    """Wrong store or entry password."""

    def __init__(self, message: str):
        super().__init__("E203", message)


class BindError(ServerError):
    """Connector could not bind its listening socket."""

    def __init__(self, port: int, reason: str, host: str = ""):
        self.port = port
        self.host = host
        target = f"{host}:{port}" if host else str(port)
        super().__init__("E300", f"Cannot bind {target}: {reason}")
