"""Client for the external pricing service.

The ``PricingClient`` exposes the two operations the orchestrator
consumes as black boxes:

* ``fetch_current_values(entity_id)`` returns the entity's
  ``{min, current, max}`` values.
* ``apply_value(entity_id, value)`` writes a new current value.

Each call issues exactly one request.  Failures raise ``UpstreamError``;
transient ones (HTTP 5xx and transport errors) are flagged ``retryable``
so the orchestrator can repeat the idempotent call under the step's retry
policy.  Any other failure halts the run.

Dependencies: ``config.settings``, ``httpx``.

Typical usage::

    from webflow_agent.config.settings import get_default_settings
    from webflow_agent.core.pricing_client import PricingClient

    client = PricingClient(get_default_settings(), api_token="...")
    values = client.fetch_current_values("12345")
    client.apply_value("12345", values.current + 100)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from webflow_agent.config.settings import Settings

logger = logging.getLogger(__name__)

# Field names searched (depth-first) for each value in a response body.
_MIN_FIELDS: tuple[str, ...] = ("min", "min_price", "minPrice")
_CURRENT_FIELDS: tuple[str, ...] = (
    "base", "base_price", "basePrice", "defaultBasePrice", "default_base_price",
)
_MAX_FIELDS: tuple[str, ...] = ("max", "max_price", "maxPrice")


class UpstreamError(Exception):
    """The pricing service reported a non-success outcome.

    Attributes:
        status_code: HTTP status of the response, if one was received.
        retryable: Whether repeating the same request may succeed
            (server error or transport failure).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


@dataclass(frozen=True)
class PriceValues:
    """Values read from the pricing service for one entity.

    Attributes:
        min: Minimum allowed value, if the service reports one.
        current: Current (base) value.
        max: Maximum allowed value, if the service reports one.
    """

    min: float | None
    current: float
    max: float | None

    def to_dict(self) -> dict[str, float | None]:
        """Serialise for storage as a working variable."""
        return {"min": self.min, "current": self.current, "max": self.max}


def find_number(data: Any, names: tuple[str, ...]) -> float | None:
    """Depth-first search of a JSON body for a numeric field.

    Args:
        data: Decoded JSON (dict, list or scalar).
        names: Acceptable field names.

    Returns:
        The first numeric value found under one of *names*, or ``None``.
    """
    if isinstance(data, dict):
        for key, value in data.items():
            if (
                key in names
                and isinstance(value, (int, float))
                and not isinstance(value, bool)
            ):
                return float(value)
        for value in data.values():
            found = find_number(value, names)
            if found is not None:
                return found
    elif isinstance(data, list):
        for item in data:
            found = find_number(item, names)
            if found is not None:
                return found
    return None


class PricingClient:
    """HTTP client for the pricing service.

    Args:
        settings: Supplies base URL and timeout.
        api_token: API token sent as ``X-API-Key``.  Never stored in
            settings.
    """

    def __init__(self, settings: Settings, api_token: str = "") -> None:
        self._settings = settings
        self._api_token = api_token
        self._requests_made: int = 0

    @property
    def requests_made(self) -> int:
        """Total HTTP requests issued."""
        return self._requests_made

    # -- operations -----------------------------------------------------------

    def fetch_current_values(self, entity_id: str) -> PriceValues:
        """Read ``{min, current, max}`` for *entity_id*.

        Raises:
            UpstreamError: On a non-success response or a body without a
                current value.
        """
        body = self._request("GET", f"/listings/{entity_id}")
        current = find_number(body, _CURRENT_FIELDS)
        if current is None:
            raise UpstreamError(
                f"no current value in response for entity {entity_id}"
            )
        values = PriceValues(
            min=find_number(body, _MIN_FIELDS),
            current=current,
            max=find_number(body, _MAX_FIELDS),
        )
        logger.info("pricing: entity %s values %s", entity_id, values)
        return values

    def apply_value(self, entity_id: str, value: float) -> None:
        """Write *value* as the current value of *entity_id*.

        Raises:
            UpstreamError: On a non-success response.
        """
        payload = {"listings": [{"id": entity_id, "base": value}]}
        body = self._request("POST", "/listings", json=payload)
        if isinstance(body, dict) and body.get("error"):
            raise UpstreamError(
                f"pricing service rejected update: {body['error']}"
            )
        logger.info("pricing: entity %s set to %g", entity_id, value)


    # -- transport ------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one request and decode its JSON body.

        Returns:
            The decoded JSON body (``None`` for an empty body).

        Raises:
            UpstreamError: On any failure.  ``retryable`` is set for
                server errors and transport failures.
        """
        url = self._settings.pricing_base_url.rstrip("/") + path
        timeout = httpx.Timeout(
            self._settings.pricing_timeout_seconds, connect=10.0,
        )
        self._requests_made += 1
        try:
            with httpx.Client(timeout=timeout) as client:
                resp = client.request(
                    method, url, headers=self._build_headers(), json=json,
                )
        except httpx.HTTPError as exc:
            logger.warning("pricing: %s %s error: %s", method, path, exc)
            raise UpstreamError(
                f"{method} {path} failed: {type(exc).__name__}: {exc}",
                retryable=True,
            ) from exc

        if not 200 <= resp.status_code < 300:
            detail = f"HTTP {resp.status_code}: {resp.text[:200]}"
            logger.warning("pricing: %s %s failed: %s", method, path, detail)
            raise UpstreamError(
                f"{method} {path} failed: {detail}",
                resp.status_code,
                retryable=resp.status_code >= 500,
            )

        try:
            return resp.json() if resp.content else None
        except ValueError as exc:
            raise UpstreamError(
                f"invalid JSON from pricing service: {exc}", resp.status_code,
            ) from exc

    def _build_headers(self) -> dict[str, str]:
        headers = {"accept": "application/json"}
        if self._api_token:
            headers["X-API-Key"] = self._api_token
        return headers
