"""Client for the Bosch Smart Home Controller local API.

The controller serves self-signed certificates without usable hostnames, so
trust comes from a pinned CA instead of hostname checks.  A client is enrolled
once via the registration endpoint (while the controller is in pairing mode)
and then talks to the API port with mutual TLS.
"""

from shcsync.shc.client import RegistrationRequest, RegistrationResult, ShcClient
from shcsync.shc.identity import ClientIdentity, CertificateEncoding
from shcsync.shc.transport import EndpointMode
from shcsync.shc.trust import TrustAnchor, verify_server_chain

__all__ = [
    "CertificateEncoding",
    "ClientIdentity",
    "EndpointMode",
    "RegistrationRequest",
    "RegistrationResult",
    "ShcClient",
    "TrustAnchor",
    "verify_server_chain",
]
