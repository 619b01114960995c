"""Pinned-CA verification of the controller's server certificate.

The SHC presents a certificate issued by its own CA, usually without a
hostname or SAN that matches the address we connect to.  Instead of hostname
trust we require the chain to lead to a pinned CA (the *trust anchor*).

The TLS layer is configured with ``VERIFY_NONE`` and hands the presented chain
to :func:`verify_server_chain` before any request byte is written, so this
function is the only trust decision made for a device session.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from cryptography import x509
from loguru import logger
from OpenSSL import crypto

from shcsync.errors import (
    ChainVerificationFailed,
    MalformedCertificate,
    NoCertificatePresented,
)


@dataclass(frozen=True)
class TrustAnchor:
    """Immutable set of CA certificates trusted for device connections."""

    certificates: tuple[x509.Certificate, ...]

    @classmethod
    def from_pem(cls, data: bytes) -> TrustAnchor:
        """Build an anchor from one or more concatenated PEM certificates.

        Raises ``ValueError`` if *data* contains no certificate.
        """
        return cls(tuple(x509.load_pem_x509_certificates(data)))

    @classmethod
    def from_file(cls, path: Path | str) -> TrustAnchor:
        return cls.from_pem(Path(path).read_bytes())

    def build_store(self) -> crypto.X509Store:
        """Return a fresh OpenSSL store holding the anchor certificates.

        Every anchor certificate is a trust point, even when it is an issuing
        CA rather than a self-signed root (``PARTIAL_CHAIN``).
        """
        store = crypto.X509Store()
        for cert in self.certificates:
            store.add_cert(crypto.X509.from_cryptography(cert))
        store.set_flags(crypto.X509StoreFlags.PARTIAL_CHAIN)
        return store


def verify_server_chain(presented: Sequence[bytes], trust_anchor: TrustAnchor) -> None:
    """Verify a DER-encoded server chain against *trust_anchor*.

    ``presented[0]`` is the leaf; the remaining entries are used as untrusted
    intermediates for this call only.  No hostname or SAN is checked.

    Raises :class:`NoCertificatePresented`, :class:`MalformedCertificate` or
    :class:`ChainVerificationFailed`.
    """
    if not presented:
        raise NoCertificatePresented()

    try:
        leaf = x509.load_der_x509_certificate(presented[0])
    except ValueError as exc:
        raise MalformedCertificate(f"can't parse leaf cert: {exc}") from exc

    intermediates: list[crypto.X509] = []
    for der in presented[1:]:
        try:
            cert = x509.load_der_x509_certificate(der)
        except ValueError as exc:
            raise MalformedCertificate(f"can't parse intermediate cert: {exc}") from exc
        intermediates.append(crypto.X509.from_cryptography(cert))

    # No DNS name on purpose: SHC server certs carry no usable hostname.
    store_ctx = crypto.X509StoreContext(
        trust_anchor.build_store(),
        crypto.X509.from_cryptography(leaf),
        chain=intermediates,
    )
    try:
        store_ctx.verify_certificate()
    except crypto.X509StoreContextError as exc:
        logger.debug(
            "[SHC/Trust] rejected server cert {}: {}", leaf.subject.rfc4514_string(), exc,
        )
        raise ChainVerificationFailed(str(exc)) from exc

    logger.debug(
        "[SHC/Trust] successfully verified SHC server cert {}",
        leaf.subject.rfc4514_string(),
    )
