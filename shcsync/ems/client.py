"""EMS-ESP REST client (plain HTTP on the local network)."""

from __future__ import annotations

import requests
from loguru import logger

from shcsync.errors import RequestFailed, ResponseReadFailed

SELTEMP_PATH = "api/thermostat/seltemp"
DEFAULT_TIMEOUT = 10.0


class EmsClient:
    """Client for an EMS-ESP gateway at *hostport* (``host`` or ``host:port``)."""

    def __init__(self, hostport: str, access_token: str, timeout: float | None = DEFAULT_TIMEOUT) -> None:
        self.hostport = hostport
        self.access_token = access_token.strip()  # token files usually end with a newline
        self.timeout = timeout

    def url_for(self, part: str) -> str:
        return f"http://{self.hostport}/{part}"

    def ping(self) -> str:
        """Read the thermostat set temperature as a connectivity check."""
        url = self.url_for(SELTEMP_PATH)
        try:
            response = requests.get(
                url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            raise RequestFailed(f"GET request to '{url}' failed: {exc}") from exc

        with response:
            try:
                body = response.content
            except requests.exceptions.RequestException as exc:
                raise ResponseReadFailed(f"can't read response from '{url}': {exc}") from exc

        logger.debug("[EMS/Client] GET {} -> {}", url, response.status_code)
        return body.decode("utf-8", errors="replace")
