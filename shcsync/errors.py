"""Exception hierarchy shared by the SHC and EMS clients.

Every error carries enough context (status, body, underlying cause) to print
an actionable message.  Nothing here is retried or treated as fatal; the CLI
decides what to do with it.
"""

from __future__ import annotations


class ShcsyncError(Exception):
    """Base class for all errors raised by shcsync."""


# ---------------------------------------------------------------------------
# Server certificate verification
# ---------------------------------------------------------------------------
class VerificationError(ShcsyncError):
    """The device's server certificate chain could not be trusted."""


class NoCertificatePresented(VerificationError):
    def __init__(self) -> None:
        super().__init__("no certificates presented")


class MalformedCertificate(VerificationError):
    """A certificate in the presented chain could not be parsed."""


class ChainVerificationFailed(VerificationError):
    """The chain does not lead to the trust anchor (expired, bad signature, ...)."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"server cert verification failed: {reason}")
        self.reason = reason


# ---------------------------------------------------------------------------
# Client certificate selection
# ---------------------------------------------------------------------------
class ClientCertPolicyError(ShcsyncError):
    """The device's client certificate request conflicts with the endpoint mode."""


class UnexpectedClientCertRequest(ClientCertPolicyError):
    def __init__(self) -> None:
        super().__init__("unexpected client certificate request for public endpoint")


class DeviceNotInPairingMode(ClientCertPolicyError):
    """The controller only asks for a certificate here outside pairing mode."""

    def __init__(self) -> None:
        super().__init__(
            "SHC asked for a client certificate - have you pressed the button on SHC?"
        )


class ClientCertificateRejected(ClientCertPolicyError):
    def __init__(self, detail: str) -> None:
        super().__init__(
            "this client seems to be unknown to SHC - have you registered? "
            f"Detail: {detail}"
        )
        self.detail = detail


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------
class TransportError(ShcsyncError):
    """The HTTP round trip did not complete."""


class RequestFailed(TransportError):
    pass


class ResponseReadFailed(TransportError):
    pass


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------
class RegisterError(ShcsyncError):
    """Client registration did not succeed."""


class RegistrationRejected(RegisterError):
    """The controller answered the registration with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"SHC register request failed with status {status} - body: {body}")
        self.status = status
        self.body = body


class ClientIdentityMissing(RegisterError):
    def __init__(self) -> None:
        super().__init__(
            "no client certificate configured - set shc-client-cert-file "
            "and shc-client-key-file"
        )
