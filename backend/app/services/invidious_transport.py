from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

LOGGER = logging.getLogger("music_stream.http")

DEFAULT_USER_AGENT = "music-stream-server/1.0"
_LOGGED_BODY_CHARS = 500


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class TransportError(Exception):
    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class Transport(Protocol):
    def get(self, url: str, *, timeout_seconds: float) -> TransportResponse:
        ...


class UrllibTransport:
    """
    Blocking GET transport.

    Non-2xx responses are returned with their status code; only connection
    failures and timeouts raise `TransportError`.
    """

    def __init__(self, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._user_agent = user_agent

    def get(self, url: str, *, timeout_seconds: float) -> TransportResponse:
        request = Request(
            url,
            headers={
                "accept": "application/json",
                "user-agent": self._user_agent,
            },
            method="GET",
        )
        LOGGER.debug("outbound request method=GET url=%s", url)

        try:
            with urlopen(request, timeout=timeout_seconds) as response:
                status_code = int(response.getcode() or 0)
                body = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            status_code = int(exc.code)
            body = exc.read().decode("utf-8", errors="replace")
        except TimeoutError as exc:
            raise TransportError(f"request timed out: {url}", timed_out=True) from exc
        except URLError as exc:
            timed_out = isinstance(exc.reason, TimeoutError)
            raise TransportError(
                f"request failed: {exc.reason}",
                timed_out=timed_out,
            ) from exc
        except OSError as exc:
            raise TransportError(f"request failed: {exc}") from exc

        LOGGER.debug(
            "outbound response url=%s status=%s body=%s",
            url,
            status_code,
            body[:_LOGGED_BODY_CHARS],
        )
        return TransportResponse(status_code=status_code, body=body)
