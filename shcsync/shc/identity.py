"""This client's TLS identity and its text encoding for registration.

The registration endpoint takes the client certificate as a JSON string.  Which
text form a controller accepts depends on its firmware, so the encoding is a
policy:

- ``pem``: a regular PEM block (64-column base64 lines, trailing newline).
  This is the form known to register successfully.
- ``single-line-cr``: ``-----BEGIN CERTIFICATE-----\\r<base64>\\r-----END
  CERTIFICATE-----`` with no line breaks in the body, as described in the
  published SHC API documentation.  On the JSON wire the separators appear as
  ``\\r`` escapes.
"""

from __future__ import annotations

import base64
import binascii
import enum
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

_PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
_PEM_END = "-----END CERTIFICATE-----"


class CertificateEncoding(str, enum.Enum):
    """Text form of the client certificate in the registration payload."""

    PEM = "pem"
    SINGLE_LINE_CR = "single-line-cr"


@dataclass(frozen=True)
class ClientIdentity:
    """Key and certificate presented to the controller for mutual TLS.

    ``certificate`` is the leaf; ``chain`` holds any further certificates
    found in the certificate file.
    """

    certificate: x509.Certificate
    private_key: PrivateKeyTypes = field(repr=False)
    chain: tuple[x509.Certificate, ...] = ()

    def __post_init__(self) -> None:
        spki = serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        if (
            self.certificate.public_key().public_bytes(*spki)
            != self.private_key.public_key().public_bytes(*spki)
        ):
            raise ValueError("private key does not match client certificate")

    @classmethod
    def from_pem(cls, cert_pem: bytes, key_pem: bytes) -> ClientIdentity:
        certs = x509.load_pem_x509_certificates(cert_pem)
        key = serialization.load_pem_private_key(key_pem, password=None)
        return cls(certificate=certs[0], private_key=key, chain=tuple(certs[1:]))

    @classmethod
    def from_files(cls, cert_path: Path | str, key_path: Path | str) -> ClientIdentity:
        return cls.from_pem(Path(cert_path).read_bytes(), Path(key_path).read_bytes())

    @property
    def common_name(self) -> str:
        attrs = self.certificate.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        return str(attrs[0].value) if attrs else ""


def encode_certificate(
    cert: x509.Certificate,
    encoding: CertificateEncoding = CertificateEncoding.PEM,
) -> str:
    """Encode the leaf *cert* for the ``certificate`` field of a registration."""
    if encoding is CertificateEncoding.PEM:
        return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    body = base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
    return f"{_PEM_BEGIN}\r{body}\r{_PEM_END}"


def decode_certificate_text(text: str) -> bytes:
    """Return the DER bytes of a certificate in either registration encoding.

    Raises ``ValueError`` if the markers are missing or the body is not base64.
    """
    stripped = text.strip()
    if not (stripped.startswith(_PEM_BEGIN) and stripped.endswith(_PEM_END)):
        raise ValueError("certificate text lacks BEGIN/END CERTIFICATE markers")
    body = "".join(stripped[len(_PEM_BEGIN):-len(_PEM_END)].split())
    try:
        return base64.b64decode(body, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"certificate body is not valid base64: {exc}") from exc
