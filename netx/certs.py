"""Root CA and on-demand leaf certificates for TLS interception.

The root key/certificate pair is generated once and persisted under the
application data directory; every later start reloads it, so the user
only has to trust it once.  Leaf certificates are minted per hostname
the first time a browser CONNECTs to it and are cached (together with
their ``ssl.SSLContext``) for the rest of the process.

Reused material is not validated: a corrupt or expired CA on disk is
loaded as-is.
"""

from __future__ import annotations

import ipaddress
import os
import re
import shutil
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .log import get_logger

logger = get_logger(__name__)

CA_CERT_NAME = "netx-ca.crt"
CA_KEY_NAME = "netx-ca.key"
CA_COMMON_NAME = "NetX Local Root CA"
CA_ORGANIZATION = "NetX Desktop Proxy"

CA_DAYS = 3650
LEAF_DAYS = 365
KEY_SIZE = 2048


@dataclass(frozen=True)
class HostCertificate:
    """A leaf certificate for one hostname, plus where its PEMs live."""

    hostname: str
    cert: x509.Certificate
    key_pem: bytes
    cert_pem: bytes
    chain_path: Path
    key_path: Path


def _new_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def _save(path: Path, data: bytes, mode: int) -> None:
    path.write_bytes(data)
    path.chmod(mode)


def _general_name(hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)


class CertificateAuthority:
    """Owns the root CA and the per-host leaf certificate cache."""

    def __init__(self, cert_dir: str | os.PathLike[str]):
        self.cert_dir = Path(cert_dir)
        self.cert_path = self.cert_dir / CA_CERT_NAME
        self.key_path = self.cert_dir / CA_KEY_NAME
        self.ca_cert: Optional[x509.Certificate] = None
        self._ca_key: Optional[rsa.RSAPrivateKey] = None
        self._ca_cert_pem = b""
        self._hosts: dict[str, HostCertificate] = {}
        self._contexts: dict[str, ssl.SSLContext] = {}
        self._leaf_dir: Optional[Path] = None

    # -- root --------------------------------------------------------------

    def ensure_root_ca(self) -> x509.Certificate:
        """Load the persisted root pair, generating and saving it if absent."""
        if self.ca_cert is not None:
            return self.ca_cert

        self.cert_dir.mkdir(parents=True, exist_ok=True)
        if self.cert_path.exists() and self.key_path.exists():
            self._ca_cert_pem = self.cert_path.read_bytes()
            self.ca_cert = x509.load_pem_x509_certificate(self._ca_cert_pem)
            self._ca_key = serialization.load_pem_private_key(  # type: ignore[assignment]
                self.key_path.read_bytes(), password=None
            )
            logger.info("Loaded existing Root CA certificate from %s", self.cert_path)
            return self.ca_cert

        logger.info("Generating new Root CA certificate...")
        key = _new_key()
        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CA_ORGANIZATION),
        ])
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=CA_DAYS))
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(x509.KeyUsage(
                digital_signature=False, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ), critical=True)
            .sign(key, hashes.SHA256())
        )
        self._ca_cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        _save(self.key_path, _key_pem(key), 0o600)
        _save(self.cert_path, self._ca_cert_pem, 0o644)

        self.ca_cert, self._ca_key = cert, key
        logger.info("Generated new Root CA certificate at %s", self.cert_path)
        return cert

    # -- leaves ------------------------------------------------------------

    def certificate_for(self, hostname: str) -> HostCertificate:
        """Return the cached leaf for *hostname*, minting it on first use."""
        cached = self._hosts.get(hostname)
        if cached is not None:
            return cached

        self.ensure_root_ca()
        assert self.ca_cert is not None and self._ca_key is not None

        key = _new_key()
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)]))
            .issuer_name(self.ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            # back-dated for client clock skew
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=LEAF_DAYS))
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self._ca_key.public_key()),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(x509.SubjectAlternativeName([_general_name(hostname)]), critical=False)
            .sign(self._ca_key, hashes.SHA256())
        )

        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = _key_pem(key)
        leaf_dir = self._leaf_directory()
        stem = re.sub(r"[^A-Za-z0-9._-]", "_", hostname)
        chain_path = leaf_dir / f"{stem}.crt"
        key_path = leaf_dir / f"{stem}.key"
        _save(chain_path, cert_pem + self._ca_cert_pem, 0o600)
        _save(key_path, key_pem, 0o600)

        host = HostCertificate(
            hostname=hostname,
            cert=cert,
            key_pem=key_pem,
            cert_pem=cert_pem,
            chain_path=chain_path,
            key_path=key_path,
        )
        self._hosts[hostname] = host
        logger.debug("Issued leaf certificate for %s", hostname)
        return host

    def server_context(self, hostname: str) -> ssl.SSLContext:
        """Cached server-side ``SSLContext`` presenting the leaf for *hostname*.

        Only ``http/1.1`` is offered over ALPN; the tunnel carries
        HTTP/1.x semantics.
        """
        ctx = self._contexts.get(hostname)
        if ctx is None:
            host = self.certificate_for(hostname)
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ctx.load_cert_chain(host.chain_path, host.key_path)
            ctx.set_alpn_protocols(["http/1.1"])
            self._contexts[hostname] = ctx
        return ctx

    def _leaf_directory(self) -> Path:
        if self._leaf_dir is None:
            self._leaf_dir = Path(tempfile.mkdtemp(prefix="netx-leaves-"))
        return self._leaf_dir

    def close(self) -> None:
        """Drop the leaf cache and its temporary files."""
        self._hosts.clear()
        self._contexts.clear()
        if self._leaf_dir is not None:
            shutil.rmtree(self._leaf_dir, ignore_errors=True)
            self._leaf_dir = None
