"""Bosch Smart Home Controller client: ping, registration and mTLS requests.

Registration flow
-----------------
1. The operator presses the button on the SHC; it enters pairing mode for a
   short time window.
2. :meth:`ShcClient.register` POSTs this client's certificate to the client
   management port, authenticated with the base64-encoded system password.
   No client certificate is offered on that connection; if the SHC asks for
   one it is not in pairing mode and the call fails with
   :class:`~shcsync.errors.DeviceNotInPairingMode`.
3. From then on the API port accepts mutual TLS with that certificate.

Registration is a one-shot, operator-supervised action: nothing here retries,
since a retry would race the pairing window.
"""

from __future__ import annotations

import base64
import http.client
import json
from dataclasses import dataclass
from typing import Any

from loguru import logger
from OpenSSL import SSL

from shcsync.errors import (
    ClientIdentityMissing,
    RegistrationRejected,
    RequestFailed,
    ResponseReadFailed,
)
from shcsync.shc.identity import CertificateEncoding, ClientIdentity, encode_certificate
from shcsync.shc.transport import DEFAULT_TIMEOUT, DeviceHTTPConnection, EndpointMode
from shcsync.shc.trust import TrustAnchor

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
SHC_PORT_PUBLIC = 8446
SHC_PORT_CLIENT_MGMT = 8443
SHC_PORT_API = 8444  # mutual TLS, after registration

PUBLIC_INFORMATION_PATH = "smarthome/public/information"
CLIENTS_PATH = "smarthome/clients"

CLIENT_ID = "oss_shc_ems_syncer"
CLIENT_NAME = "OSS SHC EMS Syncer"
CLIENT_ROLE = "ROLE_RESTRICTED_CLIENT"

# Errors raised by the socket, TLS and HTTP layers during a round trip.
_IO_ERRORS = (OSError, SSL.Error, http.client.HTTPException)


@dataclass(frozen=True)
class RegistrationRequest:
    """Body of ``POST /smarthome/clients``."""

    certificate: str
    client_type: str = "client"
    client_id: str = CLIENT_ID
    name: str = CLIENT_NAME
    primary_role: str = CLIENT_ROLE

    def to_payload(self) -> dict[str, str]:
        return {
            "type": self.client_type,
            "id": self.client_id,
            "name": self.name,
            "primaryRole": self.primary_role,
            "certificate": self.certificate,
        }


@dataclass(frozen=True)
class RegistrationResult:
    success: bool
    status: int
    message: str = ""


@dataclass(frozen=True)
class DeviceResponse:
    status: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class ShcClient:
    """Client for one SHC, identified by *host* and pinned *trust_anchor*.

    Parameters
    ----------
    host:
        Address of the controller (usually an IP; its certificate carries no
        matching hostname).
    trust_anchor:
        CA certificates the controller's server certificate must chain to.
    client_identity:
        Key/certificate pair for registration and mutual TLS.  Only
        :meth:`ping` works without it.
    certificate_encoding:
        Text form of the certificate in the registration payload.
    timeout:
        Connect and I/O timeout in seconds for every request.
    """

    def __init__(
        self,
        host: str,
        trust_anchor: TrustAnchor,
        client_identity: ClientIdentity | None = None,
        *,
        public_port: int = SHC_PORT_PUBLIC,
        client_mgmt_port: int = SHC_PORT_CLIENT_MGMT,
        api_port: int = SHC_PORT_API,
        certificate_encoding: CertificateEncoding = CertificateEncoding.PEM,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self.host = host
        self.trust_anchor = trust_anchor
        self.client_identity = client_identity
        self.public_port = public_port
        self.client_mgmt_port = client_mgmt_port
        self.api_port = api_port
        self.certificate_encoding = certificate_encoding
        self.timeout = timeout

    # -- operations ----------------------------------------------------------

    def ping(self) -> str:
        """Fetch the public information document as a diagnostic string."""
        response = self._round_trip(
            EndpointMode.PUBLIC_NO_AUTH, "GET", self.public_port, PUBLIC_INFORMATION_PATH,
        )
        return response.body

    def format_client_cert_for_register(self) -> str:
        if self.client_identity is None:
            raise ClientIdentityMissing()
        return encode_certificate(self.client_identity.certificate, self.certificate_encoding)

    def register(self, system_password: str) -> RegistrationResult:
        """Register this client's certificate with the SHC.

        The SHC must be in pairing mode.  Raises
        :class:`~shcsync.errors.RegistrationRejected` with the device's
        status and body on any non-2xx answer.
        """
        request = RegistrationRequest(certificate=self.format_client_cert_for_register())
        body = json.dumps(request.to_payload())
        logger.debug("[SHC/Client] registration body: {}", body)

        headers = {
            "Content-Type": "application/json",
            "Systempassword": base64.b64encode(system_password.encode("utf-8")).decode("ascii"),
        }
        response = self._round_trip(
            EndpointMode.REGISTRATION_NO_AUTH,
            "POST",
            self.client_mgmt_port,
            CLIENTS_PATH,
            body=body.encode("utf-8"),
            headers=headers,
        )
        if not response.ok:
            logger.debug(
                "[SHC/Client] registration rejected with {}: {}", response.status, response.body,
            )
            raise RegistrationRejected(response.status, response.body)

        logger.info("[SHC/Client] registered client {!r} with {}", CLIENT_ID, self.host)
        return RegistrationResult(success=True, status=response.status, message=response.body)

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
    ) -> DeviceResponse:
        """Call the API port with mutual TLS, returning status and raw body.

        *payload*, if given, is sent as JSON.  Non-2xx answers are returned,
        not raised.
        """
        if self.client_identity is None:
            raise ClientIdentityMissing()
        headers: dict[str, str] = {}
        body = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            body = json.dumps(payload).encode("utf-8")
        return self._round_trip(
            EndpointMode.OPERATIONAL_MUTUAL_AUTH,
            method,
            self.api_port,
            path.lstrip("/"),
            body=body,
            headers=headers,
        )

    # -- helpers -------------------------------------------------------------

    def url_for(self, port: int, part: str) -> str:
        return f"https://{self.host}:{port}/{part}"

    def _round_trip(
        self,
        mode: EndpointMode,
        method: str,
        port: int,
        part: str,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> DeviceResponse:
        """Perform exactly one request on a fresh session for *mode*.

        Verification and certificate policy errors propagate as raised by the
        transport; other I/O failures become :class:`RequestFailed` or
        :class:`ResponseReadFailed`.
        """
        url = self.url_for(port, part)
        conn = DeviceHTTPConnection(
            self.host,
            port,
            mode,
            self.trust_anchor,
            identity=self.client_identity,
            timeout=self.timeout,
        )
        try:
            try:
                conn.request(method, f"/{part}", body=body, headers=headers or {})
                resp = conn.getresponse()
            except _IO_ERRORS as exc:
                raise RequestFailed(f"{method} request to '{url}' failed: {exc}") from exc

            try:
                data = resp.read()
            except _IO_ERRORS as exc:
                raise ResponseReadFailed(f"can't read response from '{url}': {exc}") from exc
            finally:
                resp.close()
        finally:
            conn.release()

        logger.debug("[SHC/Client] {} {} -> {}", method, url, resp.status)
        return DeviceResponse(status=resp.status, body=data.decode("utf-8", errors="replace"))
