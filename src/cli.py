"""CLI entry point.

Subcommands:
    serve        Provision the TLS identity and run both listeners (foreground)
    urls         Print the listener URLs for this host
    fingerprint  Provision the key store and print the certificate details
    probe        GET / on both listeners and report the result
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

import requests
import urllib3

from config import ConfigError, ServerConfig, load_config
from server.app import bootstrap, provision_tls
from server.errors import ServerError
from server.keygen import get_primary_ip

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _add_common_args(parser: argparse.ArgumentParser):
    """Add arguments shared by every subcommand."""
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="Config file (default: $DUALSERVE_CONFIG or ~/.dualserve/config.yaml)",
    )
    parser.add_argument(
        "--http-port",
        type=int,
        help="Plaintext listener port",
    )
    parser.add_argument(
        "--https-port",
        type=int,
        help="TLS listener port",
    )
    parser.add_argument(
        "--keystore",
        type=Path,
        help="Key store file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def _load(args) -> ServerConfig:
    return load_config(
        args.config,
        http_port=args.http_port,
        https_port=args.https_port,
        keystore_path=args.keystore,
        bind=getattr(args, "bind", None),
    )


def _display_host() -> str:
    return get_primary_ip() or "127.0.0.1"


def _listener_urls(config: ServerConfig, host: str) -> dict:
    urls = {}
    if config.http_port is not None:
        urls["http"] = f"http://{host}:{config.http_port}"
    if config.https_port is not None:
        urls["https"] = f"https://{host}:{config.https_port}"
    return urls


def _handle_serve(argv):
    """Handle 'serve' — run both listeners until interrupted."""
    parser = argparse.ArgumentParser(
        prog="dualserve serve",
        description="Provision the TLS identity and serve HTTP and HTTPS",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--bind", "-b",
        help="Address to bind to (default: all interfaces)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output startup info as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(args)
    except ConfigError as e:
        logger.error("Configuration failed: %s", e)
        return 1

    try:
        process = bootstrap(config)
    except ServerError as e:
        logger.error("Startup failed: %s", e)
        return 1

    host = _display_host()
    if args.json:
        info = {
            "urls": process.urls(host),
            "keystore": str(config.keystore_path),
            "alias": config.alias,
        }
        print(json.dumps(info, indent=2))
    else:
        print()
        for url in process.urls(host):
            print(f"Server running at {url}")
        print("\nPress Ctrl+C to stop...")

    def handle_sigterm(signum, frame):
        """Handle SIGTERM for graceful shutdown."""
        logger.info("Received SIGTERM")
        process.stop()

    signal.signal(signal.SIGTERM, handle_sigterm)

    try:
        process.wait()
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        process.stop()
    return 0


def _handle_urls(argv):
    """Handle 'urls' — print the listener URLs for this host."""
    parser = argparse.ArgumentParser(
        prog="dualserve urls",
        description="Print the plaintext and TLS listener URLs",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--host",
        help="Host to show in URLs (default: primary IP address)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(args)
    except ConfigError as e:
        logger.error("Configuration failed: %s", e)
        return 1

    urls = _listener_urls(config, args.host or _display_host())
    if args.json:
        print(json.dumps(urls, indent=2))
    else:
        for url in urls.values():
            print(url)
    return 0


def _handle_fingerprint(argv):
    """Handle 'fingerprint' — provision the key store and show the certificate."""
    parser = argparse.ArgumentParser(
        prog="dualserve fingerprint",
        description="Create or reuse the key store and print certificate details",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(args)
        tls_context = provision_tls(config)
    except (ConfigError, ServerError) as e:
        logger.error("Provisioning failed: %s", e)
        return 1

    cert = tls_context.certificate
    info = {
        "keystore": str(config.keystore_path),
        "alias": tls_context.alias,
        "subject": cert.subject.rfc4514_string(),
        "not_before": cert.not_valid_before_utc.isoformat(),
        "not_after": cert.not_valid_after_utc.isoformat(),
        "fingerprint": tls_context.fingerprint,
    }
    if args.json:
        print(json.dumps(info, indent=2))
    else:
        for key, value in info.items():
            print(f"{key + ':':<13} {value}")
    return 0


def probe(url: str, timeout: float = 5.0) -> dict:
    """GET url and report status and body.

    TLS verification is off: the listener uses a self-signed certificate.
    """
    try:
        resp = requests.get(url, verify=False, timeout=timeout)
        return {"url": url, "ok": resp.status_code == 200, "status": resp.status_code, "body": resp.text[:100]}
    except requests.exceptions.ConnectionError as e:
        return {"url": url, "ok": False, "error": f"Cannot connect: {e}"}
    except requests.exceptions.Timeout:
        return {"url": url, "ok": False, "error": "Timeout"}


def _handle_probe(argv):
    """Handle 'probe' — check both listeners respond to GET /."""
    parser = argparse.ArgumentParser(
        prog="dualserve probe",
        description="Send GET / to each configured listener",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_common_args(parser)
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to probe",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Request timeout in seconds",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = _load(args)
    except ConfigError as e:
        logger.error("Configuration failed: %s", e)
        return 1

    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    results = [probe(f"{url}/", args.timeout) for url in _listener_urls(config, args.host).values()]

    if args.json:
        print(json.dumps(results, indent=2))
    else:
        for result in results:
            detail = result.get("status", result.get("error"))
            print(f"{'ok' if result['ok'] else 'FAIL':<5} {result['url']} {detail}")

    return 0 if results and all(r["ok"] for r in results) else 1


def main(argv=None):
    """CLI entry point.

    Dispatches to subcommands.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    subcommands = {
        "serve": _handle_serve,
        "urls": _handle_urls,
        "fingerprint": _handle_fingerprint,
        "probe": _handle_probe,
    }

    if not argv or argv[0] in ("-h", "--help"):
        print("Usage: dualserve <command> [options]")
        print()
        print("Commands:")
        print("  serve        Run the HTTP and HTTPS listeners")
        print("  urls         Print the listener URLs")
        print("  fingerprint  Create or reuse the key store, print certificate")
        print("  probe        Check both listeners answer GET /")
        print()
        print("Run 'dualserve <command> --help' for command-specific options.")
        return 0

    subcmd = argv[0]
    if subcmd not in subcommands:
        print(f"Error: Unknown command '{subcmd}'")
        print(f"Available commands: {', '.join(subcommands)}")
        return 1

    return subcommands[subcmd](argv[1:])


if __name__ == "__main__":
    sys.exit(main())
