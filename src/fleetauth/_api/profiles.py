"""Data API (PostgREST) profile lookup.

Endpoint:
  - GET /rest/v1/<profiles_table>?id=eq.<user_id>&select=*
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from fleetauth._transport import Transport
from fleetauth.config import AuthConfig
from fleetauth.exceptions import FleetAuthApiError
from fleetauth.models import UserProfile


def parse_profile_rows(rows: Any, *, endpoint: str) -> UserProfile | None:
    """Return the single profile in *rows*, or ``None`` when there is none."""
    if not isinstance(rows, list):
        raise FleetAuthApiError("Profile response is not a list", code="invalid_response", endpoint=endpoint)
    if not rows:
        return None
    if len(rows) > 1:
        raise FleetAuthApiError(
            f"Expected at most one profile, got {len(rows)}",
            code="multiple_rows",
            endpoint=endpoint,
        )
    try:
        return UserProfile.model_validate(rows[0])
    except ValidationError as exc:
        raise FleetAuthApiError(
            f"Profile row is malformed: {exc.error_count()} validation error(s)",
            code="invalid_response",
            endpoint=endpoint,
        ) from exc


async def fetch_profile(
    config: AuthConfig,
    transport: Transport,
    user_id: str,
    *,
    access_token: str | None = None,
) -> UserProfile | None:
    endpoint = f"/{config.profiles_table}"
    rows = await transport.request(
        "GET",
        f"{config.rest_url}{endpoint}",
        params={"id": f"eq.{user_id}", "select": "*"},
        access_token=access_token,
    )
    return parse_profile_rows(rows, endpoint=endpoint)
