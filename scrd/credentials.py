"""TLS credentials: certificate generation, inspection and SSL contexts."""

from __future__ import annotations

import datetime
import ipaddress
import os
import ssl
from collections.abc import Iterable
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .config import RelayConfig
from .util import expand_path

DEFAULT_HOSTS = ("localhost", "127.0.0.1")


def generate_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _san_entries(hosts: Iterable[str]) -> list[x509.GeneralName]:
    entries: list[x509.GeneralName] = []
    for host in hosts:
        try:
            entries.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            entries.append(x509.DNSName(host))
    return entries


def issue_certificate(
    common_name: str,
    *,
    key: rsa.RSAPrivateKey | None = None,
    issuer: tuple[x509.Certificate, rsa.RSAPrivateKey] | None = None,
    ca: bool = False,
    days: int = 365,
    hosts: Iterable[str] = DEFAULT_HOSTS,
) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """Create a certificate for ``common_name``.

    Without ``issuer`` the certificate is self-signed. ``ca=True`` produces a
    certificate that may sign others (a throwaway root for mutual TLS).
    """
    key = key if key is not None else generate_key()
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    if issuer is None:
        issuer_name, signing_key = subject, key
    else:
        issuer_name, signing_key = issuer[0].subject, issuer[1]

    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()),
            critical=False,
        )
    )

    if ca:
        builder = builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    else:
        sans = _san_entries(hosts)
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

    cert = builder.sign(signing_key, hashes.SHA256())
    return cert, key


def write_pem(
    cert: x509.Certificate,
    key: rsa.RSAPrivateKey,
    cert_path: str | Path,
    key_path: str | Path,
    *,
    password: bytes | None = None,
) -> None:
    encryption: serialization.KeySerializationEncryption
    if password:
        encryption = serialization.BestAvailableEncryption(password)
    else:
        encryption = serialization.NoEncryption()

    for path in (cert_path, key_path):
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    Path(cert_path).write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    Path(key_path).write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=encryption,
        )
    )
    try:
        os.chmod(key_path, 0o600)
    except OSError:
        pass


def generate_self_signed(
    cert_path: str | Path,
    key_path: str | Path,
    *,
    common_name: str = "scrd",
    days: int = 365,
    hosts: Iterable[str] = DEFAULT_HOSTS,
) -> x509.Certificate:
    cert, key = issue_certificate(common_name, days=days, hosts=hosts)
    write_pem(cert, key, cert_path, key_path)
    return cert


def load_certificate(path: str | Path) -> x509.Certificate:
    p = Path(expand_path(str(path)))
    if not p.exists():
        raise FileNotFoundError(f"Certificate not found at {p}")
    try:
        return x509.load_pem_x509_certificate(p.read_bytes())
    except ValueError as e:
        raise ValueError(f"Invalid PEM certificate at {p}: {e}") from e


def describe_certificate(path: str | Path) -> str:
    cert = load_certificate(path)
    cns = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    cn = cns[0].value if cns else "-"
    expires = cert.not_valid_after_utc.strftime("%Y-%m-%d %H:%M:%SZ")
    fingerprint = cert.fingerprint(hashes.SHA256()).hex()[:16]
    return f"cn={cn} expires={expires} sha256={fingerprint}"


def _require_file(label: str, path: str | None) -> str:
    if not path:
        raise RuntimeError(f"{label} is not set")
    p = expand_path(path)
    if not os.path.exists(p):
        raise FileNotFoundError(f"{label} not found at {p}")
    return p


def build_server_context(cfg: RelayConfig) -> ssl.SSLContext:
    """TLS server context from the configured certificate chain.

    With ``ca_path`` set, client certificates are verified against it;
    ``require_client_cert`` makes them mandatory.
    """
    cert_path = _require_file("cert_path", cfg.cert_path)
    key_path = _require_file("key_path", cfg.key_path)

    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(cert_path, key_path, password=cfg.key_password or None)

    if cfg.ca_path:
        ctx.load_verify_locations(cafile=_require_file("ca_path", cfg.ca_path))
        ctx.verify_mode = ssl.CERT_REQUIRED if cfg.require_client_cert else ssl.CERT_OPTIONAL
    elif cfg.require_client_cert:
        raise ValueError("require_client_cert needs ca_path to verify client certificates")

    return ctx


def build_client_context(
    *,
    ca_path: str | None = None,
    cert_path: str | None = None,
    key_path: str | None = None,
    insecure: bool = False,
) -> ssl.SSLContext:
    cafile = _require_file("ca_path", ca_path) if ca_path else None
    ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=cafile)
    if insecure:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE

    if cert_path:
        ctx.load_cert_chain(
            _require_file("cert_path", cert_path),
            _require_file("key_path", key_path) if key_path else None,
        )
    return ctx
