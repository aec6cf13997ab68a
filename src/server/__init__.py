"""Server package for the dual plaintext/TLS listener.

Provisions a self-signed identity into a password-protected key store,
builds a TLS context from it, and serves one shared pipeline on a
plaintext and a TLS connector.
"""

from server.errors import (
    ServerError,
    ParameterError,
    CryptoError,
    StoreIOError,
    StoreCorruptError,
    AliasNotFoundError,
    AuthenticationError,
    BindError,
)
from server.keygen import (
    Identity,
    HashAlgorithm,
    SignatureAlgorithm,
    generate,
)
from server.keystore import (
    KeyStore,
    persist,
    load,
    ensure_identity,
)
from server.tls import (
    TLSContext,
    build,
)
from server.pipeline import (
    Request,
    Response,
    CorsPolicy,
    Pipeline,
    default_pipeline,
)
from server.httpd import (
    Protocol,
    LifecycleState,
    ConnectorSpec,
    ServerProcess,
    ServerBootstrap,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_BIND,
)

__all__ = [
    # Errors
    "ServerError",
    "ParameterError",
    "CryptoError",
    "StoreIOError",
    "StoreCorruptError",
    "AliasNotFoundError",
    "AuthenticationError",
    "BindError",
    # Key material
    "Identity",
    "HashAlgorithm",
    "SignatureAlgorithm",
    "generate",
    # Key store
    "KeyStore",
    "persist",
    "load",
    "ensure_identity",
    # TLS
    "TLSContext",
    "build",
    # Pipeline
    "Request",
    "Response",
    "CorsPolicy",
    "Pipeline",
    "default_pipeline",
    # Server
    "Protocol",
    "LifecycleState",
    "ConnectorSpec",
    "ServerProcess",
    "ServerBootstrap",
    "DEFAULT_HTTP_PORT",
    "DEFAULT_HTTPS_PORT",
    "DEFAULT_BIND",
]
