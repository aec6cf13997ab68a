"""Key pair and self-signed certificate generation.

Produces the server identity that the key store persists: an EC or RSA
key pair plus a self-signed X.509 certificate whose subject is the alias.
"""

import datetime
import ipaddress
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from server.errors import CryptoError, ParameterError

logger = logging.getLogger(__name__)

PrivateKey = Union[ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]

# Certificate defaults
DEFAULT_KEY_SIZE = 256
DEFAULT_DAYS_VALID = 365 * 25

EC_CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}
RSA_MIN_KEY_SIZE = 2048
RSA_MAX_KEY_SIZE = 16384


class HashAlgorithm(Enum):
    """Digest used to sign the certificate."""

    NONE = "none"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA224 = "sha224"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @classmethod
    def parse(cls, value: Union[str, "HashAlgorithm"]) -> "HashAlgorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ParameterError(f"Unknown hash algorithm: {value}") from None


class SignatureAlgorithm(Enum):
    """Key pair / signature family."""

    ANON = "anonymous"
    RSA = "rsa"
    DSA = "dsa"
    ECDSA = "ecdsa"

    @classmethod
    def parse(cls, value: Union[str, "SignatureAlgorithm"]) -> "SignatureAlgorithm":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ParameterError(f"Unknown signature algorithm: {value}") from None


_HASHES = {
    HashAlgorithm.SHA1: hashes.SHA1,
    HashAlgorithm.SHA224: hashes.SHA224,
    HashAlgorithm.SHA256: hashes.SHA256,
    HashAlgorithm.SHA384: hashes.SHA384,
    HashAlgorithm.SHA512: hashes.SHA512,
}


@dataclass
class Identity:
    """A private key and the self-signed certificate for its public half."""

    alias: str
    private_key: PrivateKey
    certificate: x509.Certificate
    hash_algorithm: HashAlgorithm
    signature_algorithm: SignatureAlgorithm
    key_size: int

    @property
    def public_key(self):
        return self.certificate.public_key()

    @property
    def not_before(self) -> datetime.datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc

    @property
    def fingerprint(self) -> str:
        return format_fingerprint(self.certificate)


def format_fingerprint(certificate: x509.Certificate) -> str:
    """SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")."""
    return certificate.fingerprint(hashes.SHA256()).hex(":").upper()


def get_hostname() -> str:
    """Get the system hostname."""
    return socket.gethostname()


def get_primary_ip() -> Optional[str]:
    """Get the primary IP address.

    Connects a UDP socket towards a public address and reads back the
    bound local address. No packets are sent.

    Returns:
        Primary IP address, or None if cannot be determined
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.settimeout(0)
            sock.connect(("8.8.8.8", 80))
            ip: str = sock.getsockname()[0]
        finally:
            sock.close()
        return ip
    except OSError:
        return None


def validate_parameters(
    alias: str,
    hash_alg: HashAlgorithm,
    sign_alg: SignatureAlgorithm,
    key_size: int,
    password: str,
    days_valid: int,
) -> None:
    """Check generation parameters before any key material is produced.

    Raises:
        ParameterError: If alias, password, key size or validity are invalid
        CryptoError: If the hash/signature combination is unsupported
    """
    if not alias:
        raise ParameterError("Certificate alias must not be empty")
    if not password:
        raise ParameterError(f"Entry password for '{alias}' must not be empty")
    if not isinstance(days_valid, int) or days_valid <= 0:
        raise ParameterError(f"days_valid must be a positive integer, got {days_valid!r}")

    if hash_alg not in _HASHES:
        raise CryptoError(f"Hash algorithm {hash_alg.name} is not supported for signing")
    if sign_alg not in (SignatureAlgorithm.ECDSA, SignatureAlgorithm.RSA):
        raise CryptoError(f"Signature algorithm {sign_alg.name} is not supported")

    if sign_alg is SignatureAlgorithm.ECDSA and key_size not in EC_CURVES:
        supported = ", ".join(str(size) for size in EC_CURVES)
        raise ParameterError(f"ECDSA key size must be one of {supported}, got {key_size}")
    if sign_alg is SignatureAlgorithm.RSA and (
        key_size < RSA_MIN_KEY_SIZE or key_size > RSA_MAX_KEY_SIZE or key_size % 256
    ):
        raise ParameterError(
            f"RSA key size must be a multiple of 256 between "
            f"{RSA_MIN_KEY_SIZE} and {RSA_MAX_KEY_SIZE}, got {key_size}"
        )


def _generate_key(sign_alg: SignatureAlgorithm, key_size: int) -> PrivateKey:
    if sign_alg is SignatureAlgorithm.ECDSA:
        return ec.generate_private_key(EC_CURVES[key_size]())
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _subject_alt_names(
    hostnames: Optional[Sequence[str]],
    ip_addresses: Optional[Sequence[str]],
) -> x509.SubjectAlternativeName:
    if hostnames is None:
        hostnames = ["localhost", get_hostname()]
    if ip_addresses is None:
        ip_addresses = ["127.0.0.1"]
        if ip := get_primary_ip():
            ip_addresses.append(ip)

    entries: list[x509.GeneralName] = []
    for name in dict.fromkeys(hostnames):
        entries.append(x509.DNSName(name))
    for ip in dict.fromkeys(ip_addresses):
        entries.append(x509.IPAddress(ipaddress.ip_address(ip)))
    return x509.SubjectAlternativeName(entries)


def generate(
    alias: str,
    hash_alg: Union[str, HashAlgorithm],
    sign_alg: Union[str, SignatureAlgorithm],
    key_size: int,
    password: str,
    days_valid: int,
    hostnames: Optional[Sequence[str]] = None,
    ip_addresses: Optional[Sequence[str]] = None,
) -> Identity:
    """Generate a fresh key pair and a self-signed certificate.

    Creates a certificate with:
    - Subject = Issuer = CN=<alias>
    - SAN = localhost, hostname, 127.0.0.1 and the primary IP (if available)
    - Validity = now .. now + days_valid

    Every call draws new randomness; two calls with equal arguments yield
    different key pairs.

    Args:
        alias: Name of the identity, used as certificate CN
        hash_alg: Signature digest (e.g. "SHA256")
        sign_alg: Key family, "ECDSA" or "RSA"
        key_size: EC curve size (256/384/521) or RSA modulus bits
        password: Entry password the identity will be stored under
        days_valid: Certificate validity in days
        hostnames: DNS names for the SAN (default: localhost + hostname)
        ip_addresses: IP addresses for the SAN (default: loopback + primary IP)

    Returns:
        Identity with the private key and certificate

    Raises:
        ParameterError: If alias, password, key size or validity are invalid
        CryptoError: If the provider cannot satisfy the request
    """
    hash_alg = HashAlgorithm.parse(hash_alg)
    sign_alg = SignatureAlgorithm.parse(sign_alg)
    validate_parameters(alias, hash_alg, sign_alg, key_size, password, days_valid)

    logger.info(
        "Generating %s-%d key pair and self-signed certificate for '%s'",
        sign_alg.name, key_size, alias,
    )

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, alias)])
    not_before = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    not_after = not_before + datetime.timedelta(days=days_valid)

    try:
        san = _subject_alt_names(hostnames, ip_addresses)
    except ValueError as e:
        raise ParameterError(f"Invalid subject alternative name: {e}") from e

    key_usage = x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=sign_alg is SignatureAlgorithm.RSA,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )

    try:
        key = _generate_key(sign_alg, key_size)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(key_usage, critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            .add_extension(san, critical=False)
            .sign(key, _HASHES[hash_alg]())
        )
    except (UnsupportedAlgorithm, ValueError, TypeError) as e:
        raise CryptoError(
            f"Cannot create {sign_alg.name}-{key_size} certificate with "
            f"{hash_alg.name}: {e}"
        ) from e

    identity = Identity(
        alias=alias,
        private_key=key,
        certificate=certificate,
        hash_algorithm=hash_alg,
        signature_algorithm=sign_alg,
        key_size=key_size,
    )
    logger.info("Certificate fingerprint (SHA256): %s", identity.fingerprint)
    return identity


def identity_from_material(
    alias: str,
    private_key: PrivateKey,
    certificate: x509.Certificate,
) -> Identity:
    """Rebuild an Identity from a key and certificate loaded from storage.

    Raises:
        CryptoError: If the key type is unsupported or does not match the certificate
    """
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        sign_alg = SignatureAlgorithm.ECDSA
        key_size = private_key.curve.key_size
    elif isinstance(private_key, rsa.RSAPrivateKey):
        sign_alg = SignatureAlgorithm.RSA
        key_size = private_key.key_size
    else:
        raise CryptoError(f"Unsupported key type for '{alias}': {type(private_key).__name__}")

    if private_key.public_key() != certificate.public_key():
        raise CryptoError(f"Certificate for '{alias}' does not match its private key")

    digest = certificate.signature_hash_algorithm
    hash_alg = HashAlgorithm.parse(digest.name) if digest else HashAlgorithm.NONE
    return Identity(
        alias=alias,
        private_key=private_key,
        certificate=certificate,
        hash_algorithm=hash_alg,
        signature_algorithm=sign_alg,
        key_size=key_size,
    )
