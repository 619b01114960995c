"""Short-lived TLS sessions to the controller, one per request.

Each outbound call opens a fresh pyOpenSSL connection configured for one
:class:`EndpointMode`, verifies the server chain with
:func:`~shcsync.shc.trust.verify_server_chain`, applies the mode's client
certificate policy, and only then lets ``http.client`` write the request.
The session is closed once the response has been read; nothing (and in
particular no client certificate state) is carried over to the next call.

OpenSSL has no client-side hook for answering a certificate request, so the
request is observed through the handshake info callback and the mode's
policy is enforced before any application data is sent.
"""

from __future__ import annotations

import enum
import http.client
import io
import ipaddress
import select
import socket
from typing import Any, Callable, Sequence, TypeVar

from cryptography.hazmat.primitives import serialization
from loguru import logger
from OpenSSL import SSL

from shcsync.errors import (
    ClientCertificateRejected,
    DeviceNotInPairingMode,
    UnexpectedClientCertRequest,
)
from shcsync.shc.identity import ClientIdentity
from shcsync.shc.trust import TrustAnchor, verify_server_chain

DEFAULT_TIMEOUT = 10.0  # seconds, connect and per-I/O wait

# Long state string OpenSSL reports after a CertificateRequest was received
# (same for TLS 1.2 and 1.3).
_CERT_REQUEST_STATE = b"read server certificate request"

_T = TypeVar("_T")


class EndpointMode(str, enum.Enum):
    """Client certificate policy attached to a single device session."""

    PUBLIC_NO_AUTH = "public"
    REGISTRATION_NO_AUTH = "registration"
    OPERATIONAL_MUTUAL_AUTH = "operational"


def check_certificate_request(
    mode: EndpointMode,
    identity: ClientIdentity | None,
    acceptable_issuers: Sequence[bytes] = (),
) -> None:
    """Decide whether a client certificate request is acceptable for *mode*.

    *acceptable_issuers* holds the DER-encoded CA names from the server's
    certificate request; an empty list means the server accepts any issuer.
    """
    if mode is EndpointMode.PUBLIC_NO_AUTH:
        raise UnexpectedClientCertRequest()
    if mode is EndpointMode.REGISTRATION_NO_AUTH:
        raise DeviceNotInPairingMode()

    if identity is None:
        raise ClientCertificateRejected("no client certificate configured")
    if not acceptable_issuers:
        return

    certs = (identity.certificate, *identity.chain)
    accepted = set(acceptable_issuers)
    if not any(cert.issuer.public_bytes() in accepted for cert in certs):
        raise ClientCertificateRejected(
            "client certificate issuer "
            f"{identity.certificate.issuer.rfc4514_string()} is not accepted by the device"
        )


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


class TLSSession:
    """One TLS connection to a device endpoint.

    Implements the small socket surface ``http.client`` needs (``sendall``,
    ``makefile``, ``close``).  Like a real socket, the session stays open
    until both the connection and any file returned by :meth:`makefile`
    have been closed.
    """

    def __init__(
        self,
        host: str,
        port: int,
        mode: EndpointMode,
        trust_anchor: TrustAnchor,
        identity: ClientIdentity | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.mode = mode
        self.trust_anchor = trust_anchor
        self.identity = identity
        self.timeout = timeout

        self._sock: socket.socket | None = None
        self._conn: SSL.Connection | None = None
        self._cert_requested = False
        self._received = 0
        self._makefile_refs = 0
        self._closed = False

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def client_cert_requested(self) -> bool:
        """``True`` if the device sent a CertificateRequest in the handshake."""
        return self._cert_requested

    # -- setup ---------------------------------------------------------------

    def _build_context(self) -> SSL.Context:
        ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
        ctx.set_min_proto_version(SSL.TLS1_2_VERSION)
        # Built-in checks are off; verify_server_chain() is the trust decision.
        ctx.set_verify(SSL.VERIFY_NONE)
        if self.mode is EndpointMode.OPERATIONAL_MUTUAL_AUTH and self.identity is not None:
            ctx.use_certificate(self.identity.certificate)
            for extra in self.identity.chain:
                ctx.add_extra_chain_cert(extra)
            ctx.use_privatekey(self.identity.private_key)
            ctx.check_privatekey()
        ctx.set_info_callback(self._on_handshake_state)
        return ctx

    def _on_handshake_state(self, conn: SSL.Connection, where: int, ret: int) -> None:
        if where & SSL.SSL_CB_LOOP and _CERT_REQUEST_STATE in conn.get_state_string():
            self._cert_requested = True

    def open(self) -> TLSSession:
        """Connect, handshake, verify the device and apply the mode's policy.

        On any failure the underlying socket is closed before the error
        propagates.
        """
        self._sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
        try:
            self._conn = SSL.Connection(self._build_context(), self._sock)
            self._conn.set_connect_state()
            if not _is_ip_address(self.host):
                self._conn.set_tlsext_host_name(self.host.encode("idna"))

            try:
                self._io(self._conn.do_handshake)
            except SSL.Error as exc:
                if self._cert_requested:
                    self._enforce_certificate_policy(handshake_error=exc)
                raise

            self._verify_peer()
            if self._cert_requested:
                self._enforce_certificate_policy()
        except BaseException:
            self.release()
            raise

        logger.debug(
            "[SHC/Transport] {} session to {} established ({})",
            self.mode.value, self.address, self._conn.get_protocol_version_name(),
        )
        return self

    def _verify_peer(self) -> None:
        assert self._conn is not None
        chain = self._conn.get_peer_cert_chain() or []
        verify_server_chain(
            [c.to_cryptography().public_bytes(serialization.Encoding.DER) for c in chain],
            self.trust_anchor,
        )

    def _enforce_certificate_policy(self, handshake_error: SSL.Error | None = None) -> None:
        assert self._conn is not None
        logger.debug(
            "[SHC/Transport] {} endpoint {} requested a client certificate",
            self.mode.value, self.address,
        )
        if handshake_error is not None and self.mode is EndpointMode.OPERATIONAL_MUTUAL_AUTH:
            raise ClientCertificateRejected(f"handshake aborted by device: {handshake_error}")
        check_certificate_request(
            self.mode,
            self.identity,
            [name.der() for name in self._conn.get_client_ca_list()],
        )

    # -- I/O -----------------------------------------------------------------

    def _io(self, operation: Callable[..., _T], *args: Any) -> _T:
        """Run a pyOpenSSL call on the non-blocking socket, waiting as needed."""
        while True:
            try:
                return operation(*args)
            except SSL.WantReadError:
                self._wait(readable=True)
            except SSL.WantWriteError:
                self._wait(readable=False)

    def _wait(self, readable: bool) -> None:
        assert self._sock is not None
        watch = [self._sock]
        ready = select.select(watch if readable else [], [] if readable else watch, [], self.timeout)
        if not any(ready):
            raise TimeoutError(f"timed out after {self.timeout}s talking to {self.address}")

    def _aborted_after_cert_request(self) -> bool:
        # TLS 1.3: the device judges our certificate after the client side of
        # the handshake has already finished, so a rejection shows up as the
        # first read or write failing (alert, reset or bare EOF).
        return (
            not self._received
            and self._cert_requested
            and self.mode is EndpointMode.OPERATIONAL_MUTUAL_AUTH
        )

    def sendall(self, data: bytes) -> None:
        assert self._conn is not None
        view = memoryview(data)
        while view:
            try:
                sent = self._io(self._conn.send, view)
            except SSL.Error as exc:
                if self._aborted_after_cert_request():
                    raise ClientCertificateRejected(f"session aborted by device: {exc}") from exc
                raise
            view = view[sent:]

    def recv_into(self, buffer: Any) -> int:
        assert self._conn is not None
        try:
            n = self._io(self._conn.recv_into, buffer)
        except SSL.Error as exc:
            if self._aborted_after_cert_request():
                raise ClientCertificateRejected(f"session aborted by device: {exc}") from exc
            if isinstance(exc, SSL.ZeroReturnError):
                return 0
            if isinstance(exc, SSL.SysCallError):
                if exc.args and exc.args[0] == -1:  # EOF without close_notify
                    return 0
                raise
            if self._received and "unexpected eof" in str(exc).lower():
                return 0
            raise
        if n == 0 and self._aborted_after_cert_request():
            raise ClientCertificateRejected("session closed by device before any response")
        self._received += n
        return n

    def makefile(self, mode: str = "rb", *args: Any, **kwargs: Any) -> io.BufferedReader:
        if mode != "rb":
            raise ValueError(f"unsupported makefile mode {mode!r}")
        self._makefile_refs += 1
        return io.BufferedReader(_SessionReader(self))

    # -- teardown ------------------------------------------------------------

    def close(self) -> None:
        if self._makefile_refs < 1:
            self.release()
        else:
            self._makefile_refs -= 1

    def release(self) -> None:
        """Close the connection now, regardless of open readers."""
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            try:
                self._conn.shutdown()
            except SSL.Error as exc:
                logger.debug("[SHC/Transport] TLS shutdown with {}: {}", self.address, exc)
        if self._sock is not None:
            self._sock.close()

    def __enter__(self) -> TLSSession:
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


class _SessionReader(io.RawIOBase):
    """Raw reader over a :class:`TLSSession`, closed together with it."""

    def __init__(self, session: TLSSession) -> None:
        self._session = session

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        return self._session.recv_into(buffer)

    def close(self) -> None:
        if not self.closed:
            self._session.close()
        super().close()


class DeviceHTTPConnection(http.client.HTTPConnection):
    """``http.client`` connection that runs over a :class:`TLSSession`."""

    def __init__(
        self,
        host: str,
        port: int,
        mode: EndpointMode,
        trust_anchor: TrustAnchor,
        identity: ClientIdentity | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(host, port, timeout=timeout)
        self.mode = mode
        self.trust_anchor = trust_anchor
        self.identity = identity
        self.session: TLSSession | None = None

    def connect(self) -> None:
        self.session = TLSSession(
            self.host,
            self.port,
            self.mode,
            self.trust_anchor,
            identity=self.identity,
            timeout=self.timeout,
        )
        self.sock = self.session.open()

    def release(self) -> None:
        """Close the connection and its TLS session, even if a response is unread."""
        self.close()
        if self.session is not None:
            self.session.release()
            self.session = None
