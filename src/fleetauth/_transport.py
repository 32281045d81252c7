"""JSON-over-HTTP transport for the auth and data APIs."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from fleetauth._constants import USER_AGENT
from fleetauth._redact import redact_for_log
from fleetauth.config import AuthConfig
from fleetauth.exceptions import FleetAuthApiError, FleetAuthTransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`RestTransport`) concrete.
    """

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
        access_token: str | None = None,
    ) -> Any:
        ...


def _error_from_body(body: Any, status: int, endpoint: str) -> FleetAuthApiError:
    """Map GoTrue / PostgREST error payloads to :class:`FleetAuthApiError`."""
    code = ""
    message = f"HTTP {status} from {endpoint}"
    if isinstance(body, dict):
        raw_code = body.get("error_code") or body.get("code") or body.get("error")
        if raw_code is not None:
            code = str(raw_code)
        detail = body.get("error_description") or body.get("msg") or body.get("message")
        if isinstance(detail, str) and detail:
            message = detail
    return FleetAuthApiError(message, code=code, status_code=status, endpoint=endpoint)


class RestTransport:
    """HTTP transport adding the ``apikey`` and bearer headers."""

    def __init__(self, config: AuthConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self, access_token: str | None) -> dict[str, str]:
        token = access_token or self._config.anon_key
        return {
            "accept": "application/json",
            "content-type": "application/json",
            "user-agent": USER_AGENT,
            "apikey": self._config.anon_key,
            "authorization": f"Bearer {token}",
        }

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
        access_token: str | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` if empty).

        Raises :class:`FleetAuthTransportError` for network failures and
        undecodable bodies, :class:`FleetAuthApiError` for non-2xx answers.
        """
        endpoint = url.removeprefix(self._config.url)
        _logger.debug("%s %s params=%s body=%s", method, url, params, redact_for_log(json_body))

        data = json.dumps(json_body, separators=(",", ":")) if json_body is not None else None
        try:
            async with self._http.request(
                method,
                url,
                params=params,
                data=data,
                headers=self._headers(access_token),
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                text = await resp.text()
        except TimeoutError as exc:
            raise FleetAuthTransportError(f"Request to {endpoint} timed out", endpoint=endpoint) from exc
        except aiohttp.ClientError as exc:
            raise FleetAuthTransportError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        body: Any = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError as exc:
                if 200 <= status < 300:
                    raise FleetAuthTransportError(
                        f"Invalid JSON from {endpoint}: {text[:200]}",
                        status_code=status,
                        endpoint=endpoint,
                    ) from exc
                raise FleetAuthTransportError(
                    f"HTTP {status} from {endpoint}: {text[:200]}",
                    status_code=status,
                    endpoint=endpoint,
                ) from exc

        _logger.debug("%s %s -> %d %s", method, url, status, redact_for_log(body))

        if not 200 <= status < 300:
            raise _error_from_body(body, status, endpoint)
        return body
