"""Shared fixtures: a throwaway CA and a TLS device stub.

The CA builds EC P-256 certificates the way a controller's issuing CA would.
Server certificates deliberately carry no SAN and a CN that does not match
``127.0.0.1``, so every test that succeeds also demonstrates that trust does
not depend on hostnames.
"""

from __future__ import annotations

import datetime
import ssl
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Iterator

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from shcsync.shc.identity import ClientIdentity
from shcsync.shc.trust import TrustAnchor


# ===================================================================
# Test CA
# ===================================================================

@dataclass
class Issued:
    """A certificate and its private key."""

    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def cert_pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


class TestCA:
    """Self-signed CA that can issue intermediates and leaf certificates."""

    __test__ = False  # not a test class

    def __init__(self, name: str = "Test SHC CA") -> None:
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, name)])
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .add_extension(_ca_key_usage(), critical=True)
            .sign(key, hashes.SHA256())
        )
        self.root = Issued(cert, key)

    @property
    def anchor(self) -> TrustAnchor:
        return TrustAnchor((self.root.cert,))

    def issue(
        self,
        common_name: str,
        *,
        issuer: Issued | None = None,
        is_ca: bool = False,
        san: list[str] | None = None,
        not_before: datetime.datetime | None = None,
        not_after: datetime.datetime | None = None,
    ) -> Issued:
        issuer = issuer or self.root
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(issuer.cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or now - datetime.timedelta(days=1))
            .not_valid_after(not_after or now + datetime.timedelta(days=365))
        )
        if is_ca:
            builder = (
                builder
                .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
                .add_extension(_ca_key_usage(), critical=True)
            )
        else:
            builder = (
                builder
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.ExtendedKeyUsage([
                        ExtendedKeyUsageOID.CLIENT_AUTH,
                        ExtendedKeyUsageOID.SERVER_AUTH,
                    ]),
                    critical=False,
                )
            )
        if san:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in san]), critical=False,
            )
        return Issued(builder.sign(issuer.key, hashes.SHA256()), key)

    def write(self, directory: Path, name: str, issued: Issued, *chain: Issued) -> tuple[Path, Path]:
        """Write ``name.crt`` (leaf followed by *chain*) and ``name.key``."""
        directory.mkdir(parents=True, exist_ok=True)
        cert_path = directory / f"{name}.crt"
        key_path = directory / f"{name}.key"
        cert_path.write_bytes(issued.cert_pem + b"".join(c.cert_pem for c in chain))
        key_path.write_bytes(issued.key_pem)
        return cert_path, key_path

    def write_root(self, directory: Path, name: str = "ca.crt") -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(self.root.cert_pem)
        return path


def _ca_key_usage() -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        key_cert_sign=True,
        crl_sign=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        encipher_only=False,
        decipher_only=False,
    )


@pytest.fixture
def ca() -> TestCA:
    return TestCA()


@pytest.fixture
def client_issued(ca: TestCA) -> Issued:
    return ca.issue("oss_shc_ems_syncer")


@pytest.fixture
def client_identity(client_issued: Issued) -> ClientIdentity:
    return ClientIdentity(certificate=client_issued.cert, private_key=client_issued.key)


# ===================================================================
# Device stub
# ===================================================================

@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: dict[str, str]
    body: bytes
    peer_cert: dict[str, Any]

    @property
    def peer_common_name(self) -> str | None:
        for rdn in self.peer_cert.get("subject", ()):
            for attr_type, value in rdn:
                if attr_type == "commonName":
                    return value
        return None


@dataclass
class DeviceStub:
    """Threaded HTTPS server standing in for the controller."""

    server: HTTPServer
    routes: dict[tuple[str, str], tuple[int, bytes, int | None]] = field(default_factory=dict)
    requests: list[RecordedRequest] = field(default_factory=list)

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    def route(
        self,
        method: str,
        path: str,
        status: int,
        body: bytes | str,
        content_length: int | None = None,
    ) -> None:
        """Answer *method* *path*; *content_length* overrides the declared length."""
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[(method, path)] = (status, body, content_length)


class _StubHandler(BaseHTTPRequestHandler):
    server: Any

    def do_GET(self) -> None:
        self._respond()

    def do_POST(self) -> None:
        self._respond()

    def _respond(self) -> None:
        stub: DeviceStub = self.server.stub
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length) if length else b""
        stub.requests.append(RecordedRequest(
            method=self.command,
            path=self.path,
            headers={k: v for k, v in self.headers.items()},
            body=body,
            peer_cert=self.connection.getpeercert() or {},
        ))
        status, payload, declared = stub.routes.get(
            (self.command, self.path), (404, b"not found", None),
        )
        self.send_response(status)
        self.send_header("Content-Length", str(len(payload) if declared is None else declared))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def device_stub_factory(ca: TestCA, tmp_path: Path) -> Iterator[Any]:
    """Start device stubs; all are shut down at teardown.

    ``client_cert`` is ``"none"``, ``"optional"`` or ``"required"``; for the
    latter two the stub requests a client certificate verified against
    *client_ca* (default: the test CA).  *max_version* caps the TLS version.
    """
    started: list[tuple[HTTPServer, threading.Thread]] = []

    def start(
        *,
        server_cert: Issued | None = None,
        chain: tuple[Issued, ...] = (),
        client_cert: str = "none",
        client_ca: TestCA | None = None,
        max_version: ssl.TLSVersion | None = None,
    ) -> DeviceStub:
        server_cert = server_cert or ca.issue("SHC-device")
        cert_path, key_path = ca.write(tmp_path / f"stub{len(started)}", "server", server_cert, *chain)

        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(str(cert_path), str(key_path))
        if max_version is not None:
            ctx.maximum_version = max_version
        if client_cert != "none":
            ctx.verify_mode = ssl.CERT_REQUIRED if client_cert == "required" else ssl.CERT_OPTIONAL
            ctx.load_verify_locations(cadata=(client_ca or ca).root.cert_pem.decode("ascii"))

        server = HTTPServer(("127.0.0.1", 0), _StubHandler)
        server.socket = ctx.wrap_socket(server.socket, server_side=True)
        stub = DeviceStub(server=server)
        server.stub = stub  # type: ignore[attr-defined]

        thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        thread.start()
        started.append((server, thread))
        return stub

    yield start

    for server, thread in started:
        server.shutdown()
        server.server_close()
        thread.join(timeout=2.0)


@pytest.fixture
def device_stub(device_stub_factory: Any) -> DeviceStub:
    return device_stub_factory()


# ===================================================================
# EMS-ESP stub
# ===================================================================

class _EmsHandler(BaseHTTPRequestHandler):
    server: Any

    def do_GET(self) -> None:
        self.server.seen.append((self.path, self.headers.get("Authorization")))
        body = b'{"value":21.5}'
        self.send_response(200)
        # a truncating gateway announces more than it sends
        self.send_header("Content-Length", str(100 if self.server.truncate else len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def ems_server() -> Iterator[HTTPServer]:
    """Plain HTTP gateway that records (path, Authorization) per request."""
    server = HTTPServer(("127.0.0.1", 0), _EmsHandler)
    server.seen = []  # type: ignore[attr-defined]
    server.truncate = False  # type: ignore[attr-defined]
    thread = threading.Thread(target=server.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()
    thread.join(timeout=2.0)
