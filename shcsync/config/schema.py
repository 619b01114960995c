"""Configuration schema using Pydantic."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from shcsync.shc.identity import CertificateEncoding


def to_kebab(name: str) -> str:
    return name.replace("_", "-")


class Base(BaseModel):
    """Base model that accepts both kebab-case and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_kebab, populate_by_name=True)


class ShcPortsConfig(Base):
    """Controller ports; only change these for test rigs or port forwards."""

    public: int = 8446  # public information, no client cert
    client_mgmt: int = 8443  # client registration
    api: int = 8444  # mutual TLS after registration


class SyncerConfig(BaseSettings):
    """Root configuration, read from the JSON file given with ``--config``."""

    shc_host: str = ""
    shc_issuing_ca_file: str = ""  # PEM bundle the SHC server cert must chain to
    shc_client_key_file: str = ""  # optional until registration
    shc_client_cert_file: str = ""
    shc_certificate_encoding: CertificateEncoding = CertificateEncoding.PEM
    shc_ports: ShcPortsConfig = Field(default_factory=ShcPortsConfig)

    ems_esp_hostport: str = ""
    ems_esp_access_token_file: str = ""

    request_timeout: float = Field(default=10.0, gt=0)

    model_config = SettingsConfigDict(
        alias_generator=to_kebab,
        populate_by_name=True,
        env_prefix="SHCSYNC_",
    )
