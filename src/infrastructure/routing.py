"""
Routing service client (Google Directions JSON API over ``httpx``).

Returns the driving route as a coarse path (leg step endpoints) plus the
human-readable duration of the first leg.  Every failure mode -- transport
error, non-200, ``status != "OK"``, missing fields -- surfaces as
``RoutingError`` so callers have exactly one thing to degrade on.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from src.config import settings
from src.domain.entities import Coordinate, Route
from src.domain.exceptions import RoutingError

logger = logging.getLogger(__name__)


class RoutingClient:
    def __init__(
        self,
        base_url: str = settings.routing_base_url,
        api_key: str = settings.routing_api_key,
        timeout: float = settings.routing_timeout_seconds,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def compute_route(self, origin: Coordinate, destination: Coordinate) -> Route:
        params = {
            "origin": f"{origin.latitude},{origin.longitude}",
            "destination": f"{destination.latitude},{destination.longitude}",
            "mode": "driving",
        }
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = await self._client.get(self.base_url, params=params)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RoutingError(f"Directions request failed: {exc}") from exc

        return parse_directions(body)


def parse_directions(body: dict[str, Any]) -> Route:
    status = body.get("status")
    if status != "OK":
        raise RoutingError(f"Directions request failed due to {status}")
    try:
        leg = body["routes"][0]["legs"][0]
        duration_text = leg["duration"]["text"]
        duration_seconds = leg["duration"].get("value")
        path = [_coord(leg["start_location"])]
        for step in leg.get("steps", []):
            path.append(_coord(step["end_location"]))
        if len(path) == 1:
            path.append(_coord(leg["end_location"]))
    except (KeyError, IndexError, TypeError) as exc:
        raise RoutingError(f"Malformed directions response: {exc!r}") from exc

    return Route(
        path=tuple(path),
        duration_text=duration_text,
        duration_seconds=duration_seconds,
    )


def _coord(point: dict[str, float]) -> Coordinate:
    return Coordinate(float(point["lat"]), float(point["lng"]))
