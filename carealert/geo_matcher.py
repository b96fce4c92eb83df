"""
Geo Matcher Module
==================
Finds active providers (doctors / pharmacies) near a requester and
ranks them by great-circle distance. Also estimates travel time to a
provider, using Azure Maps Route Directions when a subscription key is
configured and a straight-line estimate otherwise.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Union

import requests
from dotenv import load_dotenv

from carealert.directory import ProfileDirectory
from carealert.models import PROVIDER_ROLES, Location, Provider, Role, validate_coordinate

load_dotenv()
logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371

ProviderFilter = Union[Mapping[str, object], Callable[[Provider], bool], None]


@dataclass(frozen=True)
class Match:
    provider_id: str
    distance_km: float
    rating: float = 0.0
    location: Optional[Location] = field(default=None, compare=False)

    def to_dict(self) -> dict:
        return {"provider_id": self.provider_id, "distance_km": self.distance_km}


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points given in degrees."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_KM * c


def _accepts(provider: Provider, provider_filter: ProviderFilter) -> bool:
    if provider_filter is None:
        return True
    if callable(provider_filter):
        return bool(provider_filter(provider))
    return all(
        getattr(provider, key, None) == value
        for key, value in provider_filter.items()
    )


class GeoMatcher:
    """Nearest-provider lookup over the profile directory.

    Attributes:
        subscription_key: Azure Maps subscription key (optional).
    """

    def __init__(self, directory: ProfileDirectory) -> None:
        """Initialise the matcher.

        Args:
            directory: Source of active providers and their locations.
        """
        self.directory = directory
        self.subscription_key: str = os.getenv("MAPS_SUBSCRIPTION_KEY", "")
        self._maps_enabled = bool(
            self.subscription_key and self.subscription_key != "your-key"
        )
        if not self._maps_enabled:
            logger.warning(
                "Azure Maps credentials not configured. "
                "ETA will be estimated from straight-line distance."
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def find_nearby(
        self,
        origin_lat: float,
        origin_lon: float,
        radius_km: float,
        role: Role = Role.DOCTOR,
        provider_filter: ProviderFilter = None,
    ) -> list[Match]:
        """Active providers of ``role`` within ``radius_km`` of the origin.

        Args:
            origin_lat: Requester latitude in degrees.
            origin_lon: Requester longitude in degrees.
            radius_km: Search radius in kilometres.
            role: ``Role.DOCTOR`` or ``Role.PHARMACY``.
            provider_filter: Either a mapping of provider attribute to
                required value, or a predicate taking a Provider.

        Returns:
            Matches sorted by distance ascending, then rating descending,
            then provider id ascending. Empty when nothing is in range.

        Raises:
            InvalidCoordinate: origin outside the valid lat/lon ranges.
            ValueError: non-positive radius or non-provider role.
        """
        validate_coordinate(origin_lat, origin_lon)
        if not radius_km or radius_km <= 0:
            raise ValueError(f"radius_km must be positive, got {radius_km!r}")
        role = Role(role)
        if role not in PROVIDER_ROLES:
            raise ValueError(f"{role.value} is not a provider role")

        matches: list[Match] = []
        for provider in self.directory.list_active_providers(role):
            if not _accepts(provider, provider_filter):
                continue
            distance = haversine_km(
                origin_lat, origin_lon,
                provider.location.lat, provider.location.lon,
            )
            if distance <= radius_km:
                matches.append(Match(
                    provider.id, round(distance, 3), provider.rating, provider.location
                ))

        matches.sort(key=lambda m: (m.distance_km, -m.rating, m.provider_id))
        logger.info(
            "find_nearby(%.4f, %.4f, %.1f km, %s): %d match(es).",
            origin_lat, origin_lon, radius_km, role.value, len(matches),
        )
        return matches

    def estimate_eta(self, origin: Location, destination: Location) -> dict:
        """Travel estimate from origin to destination.

        Returns:
            Dict with eta_minutes, distance_km, route_summary, source.
        """
        if self._maps_enabled:
            return self._azure_maps_eta(origin, destination)
        return self.straight_line_eta(origin, destination)

    # ------------------------------------------------------------------
    # Azure Maps route ETA
    # ------------------------------------------------------------------

    def _azure_maps_eta(self, origin: Location, destination: Location) -> dict:
        """Traffic-aware ETA from the Azure Maps Route Directions API."""
        try:
            url = "https://atlas.microsoft.com/route/directions/json"
            params = {
                "subscription-key": self.subscription_key,
                "api-version": "1.0",
                "query": (
                    f"{origin.lat},{origin.lon}:"
                    f"{destination.lat},{destination.lon}"
                ),
                "traffic": "true",
                "departAt": "now",
                "travelMode": "car",
            }
            response = requests.get(url, params=params, timeout=10)
            response.raise_for_status()
            routes = response.json().get("routes", [])
            if not routes:
                logger.warning("No routes returned from Azure Maps.")
                return self.straight_line_eta(origin, destination)

            summary = routes[0].get("summary", {})
            eta_minutes = max(1, round(summary.get("travelTimeInSeconds", 0) / 60))
            distance_km = round(summary.get("lengthInMeters", 0) / 1000, 1)
            return {
                "eta_minutes": eta_minutes,
                "distance_km": distance_km,
                "route_summary": f"{distance_km} km, ~{eta_minutes} min",
                "source": "azure_maps",
            }

        except (requests.RequestException, ValueError, AttributeError, TypeError) as exc:
            logger.error("Azure Maps route error: %s", exc)
            return self.straight_line_eta(origin, destination)

    # ------------------------------------------------------------------
    # Straight-line ETA
    # ------------------------------------------------------------------

    @staticmethod
    def straight_line_eta(origin: Location, destination: Location) -> dict:
        """Straight-line estimate: 30 km/h average, 1.3× road detour."""
        distance_km = haversine_km(origin.lat, origin.lon, destination.lat, destination.lon)
        eta_minutes = max(1, round((distance_km * 1.3 / 30) * 60))
        return {
            "eta_minutes": eta_minutes,
            "distance_km": round(distance_km, 1),
            "route_summary": f"~{round(distance_km, 1)} km, ~{eta_minutes} min (estimated)",
            "source": "estimated",
        }

    def provider_location(self, provider_id: str) -> Optional[Location]:
        provider = self.directory.get_provider(provider_id)
        return provider.location if provider else None
