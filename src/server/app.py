"""Startup sequence: key store -> TLS context -> connectors.

    provision_tls()   create-or-reuse the identity, build the TLS context
    bootstrap()       provision, build the default pipeline, start listening
"""

import logging
from typing import Optional

from config import ServerConfig
from server import keygen, keystore, tls
from server.httpd import ServerBootstrap, ServerProcess
from server.pipeline import Pipeline, default_pipeline

logger = logging.getLogger(__name__)


def provision_tls(config: ServerConfig) -> tls.TLSContext:
    """Create-or-reuse the key store entry and build its TLS context.

    Generation parameters are validated before the key store is touched.

    Raises:
        ParameterError, CryptoError: Invalid or unsupported key parameters
        StoreIOError, StoreCorruptError: Key store cannot be written or opened
        AliasNotFoundError, AuthenticationError: Key store entry unusable
    """
    hash_alg = keygen.HashAlgorithm.parse(config.hash_algorithm)
    sign_alg = keygen.SignatureAlgorithm.parse(config.signature_algorithm)
    keygen.validate_parameters(
        config.alias, hash_alg, sign_alg, config.key_size, config.entry_password, config.days_valid
    )

    def factory() -> keygen.Identity:
        return keygen.generate(
            alias=config.alias,
            hash_alg=hash_alg,
            sign_alg=sign_alg,
            key_size=config.key_size,
            password=config.entry_password,
            days_valid=config.days_valid,
        )

    store = keystore.ensure_identity(
        config.keystore_path,
        config.store_password,
        config.alias,
        config.entry_password,
        factory,
    )
    return tls.build(store, config.alias, config.store_password, config.entry_password)


def bootstrap(
    config: ServerConfig,
    pipeline: Optional[Pipeline] = None,
    server_bootstrap: Optional[ServerBootstrap] = None,
) -> ServerProcess:
    """Run the whole startup sequence and return the running server.

    Running it again against the same key store path reuses the stored
    identity instead of generating a new one.

    Args:
        config: Server configuration
        pipeline: Request pipeline (default: built-in routes + config CORS)
        server_bootstrap: Connector starter (default: one using config grace)

    Returns:
        ServerProcess in RUNNING state

    Raises:
        ServerError: Any startup failure; nothing is left listening
    """
    tls_context = provision_tls(config) if config.wants_tls else None
    specs = config.connector_specs(tls_context)
    if not specs:
        logger.warning("No connectors configured (http.port and https.port are both null)")

    if pipeline is None:
        pipeline = default_pipeline(config.cors_policy())
    if server_bootstrap is None:
        server_bootstrap = ServerBootstrap(grace_period=config.shutdown_grace)
    return server_bootstrap.start(specs, pipeline)
