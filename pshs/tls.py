import datetime
import ipaddress
import os
import ssl
import tempfile
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .errors import ResourceAcquisitionError

CERT_VALIDITY_DAYS = 30


def generate_certificate(hostname: str, days: int = CERT_VALIDITY_DAYS) -> Tuple[bytes, bytes]:
    """Return a (key_pem, cert_pem) pair for a throwaway self-signed certificate."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])

    try:
        alt_name = x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        alt_name = x509.DNSName(hostname)

    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([alt_name]), critical=False)
        .sign(key, hashes.SHA256())
    )

    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return key_pem, cert.public_bytes(serialization.Encoding.PEM)


class TLSContext:
    """
    Server-side TLS context for the listener.

    The context is created before the socket is bound so it can be handed to
    the listener; the certificate is issued later, once the address clients
    will connect to is known.
    """

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self.context: Optional[ssl.SSLContext] = None

    def __enter__(self) -> "TLSContext":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self) -> None:
        if not self.enabled:
            return
        try:
            self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        except ssl.SSLError as e:
            raise ResourceAcquisitionError(f"SSL context creation failed: {e}") from e

    def issue_certificate(self, hostname: str) -> None:
        if self.context is None:
            return
        try:
            key_pem, cert_pem = generate_certificate(hostname)
            # load_cert_chain() only reads from files
            with tempfile.TemporaryDirectory(prefix="pshs-") as tmp:
                cert_file = os.path.join(tmp, "cert.pem")
                key_file = os.path.join(tmp, "key.pem")
                with open(cert_file, "wb") as f:
                    f.write(cert_pem)
                with open(key_file, "wb") as f:
                    f.write(key_pem)
                self.context.load_cert_chain(cert_file, key_file)
        except (ssl.SSLError, OSError, ValueError) as e:
            raise ResourceAcquisitionError(f"SSL certificate setup failed: {e}") from e

    def close(self) -> None:
        self.context = None
