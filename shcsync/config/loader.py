"""Load the JSON config file and resolve the files it points to."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from shcsync.config.schema import ShcPortsConfig, SyncerConfig
from shcsync.errors import ShcsyncError
from shcsync.shc.identity import CertificateEncoding, ClientIdentity
from shcsync.shc.trust import TrustAnchor


class ConfigError(ShcsyncError):
    """The configuration file or a file it references is unusable."""


@dataclass(frozen=True)
class LoadedConfig:
    """Validated settings plus the key material and token read from disk."""

    shc_host: str
    trust_anchor: TrustAnchor
    client_identity: ClientIdentity | None
    certificate_encoding: CertificateEncoding
    shc_ports: ShcPortsConfig
    ems_esp_hostport: str
    ems_esp_access_token: str
    request_timeout: float


def _resolve(base: Path, value: str) -> Path:
    """Relative paths in the config are relative to the config file."""
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def read_config(config_path: Path | str) -> SyncerConfig:
    """Parse and validate the config file without touching referenced files."""
    path = Path(config_path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"can't read config '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"can't parse config in '{path}': {exc}") from exc

    try:
        return SyncerConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid config in '{path}': {exc}") from exc


def _load_trust_anchor(path: Path) -> TrustAnchor:
    try:
        pem = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"can't read issuing ca file '{path}': {exc}") from exc
    try:
        return TrustAnchor.from_pem(pem)
    except ValueError as exc:
        raise ConfigError(f"no certs found in {path}: {exc}") from exc


def _load_client_identity(cert_path: Path, key_path: Path) -> ClientIdentity:
    try:
        return ClientIdentity.from_files(cert_path, key_path)
    except (OSError, ValueError, TypeError) as exc:
        raise ConfigError(
            f"can't parse client key / cert '{key_path}'/'{cert_path}': {exc}"
        ) from exc


def _read_token(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"can't read '{path}': {exc}") from exc


def load_config(config_path: Path | str) -> LoadedConfig:
    """Read *config_path* and load the CA bundle, client identity and token.

    The client key/cert pair is optional (it does not exist before the first
    registration) but must be given as a pair.
    """
    path = Path(config_path)
    cfg = read_config(path)
    base = path.parent

    if not cfg.shc_issuing_ca_file:
        raise ConfigError(f"'shc-issuing-ca-file' missing in '{path}'")
    trust_anchor = _load_trust_anchor(_resolve(base, cfg.shc_issuing_ca_file))

    identity = None
    if cfg.shc_client_cert_file or cfg.shc_client_key_file:
        if not (cfg.shc_client_cert_file and cfg.shc_client_key_file):
            raise ConfigError(
                "'shc-client-cert-file' and 'shc-client-key-file' must be set together"
            )
        identity = _load_client_identity(
            _resolve(base, cfg.shc_client_cert_file),
            _resolve(base, cfg.shc_client_key_file),
        )

    token = ""
    if cfg.ems_esp_access_token_file:
        token = _read_token(_resolve(base, cfg.ems_esp_access_token_file))

    logger.info(
        "[Config] loaded {} ({} CA cert(s), client identity: {})",
        path,
        len(trust_anchor.certificates),
        identity.common_name if identity else "none",
    )
    return LoadedConfig(
        shc_host=cfg.shc_host,
        trust_anchor=trust_anchor,
        client_identity=identity,
        certificate_encoding=cfg.shc_certificate_encoding,
        shc_ports=cfg.shc_ports,
        ems_esp_hostport=cfg.ems_esp_hostport,
        ems_esp_access_token=token,
        request_timeout=cfg.request_timeout,
    )
