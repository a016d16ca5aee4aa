"""
core/geo.py -- Approximate IP geolocation for device records.

The lookup is an optional HTTP call to a configurable provider. Every failure
mode collapses to None: a missing address, a private or loopback address, a
disabled provider, a network error, or an unexpected response body. Device
tracking must never fail because geolocation did.

The requests.Session is created lazily on first use and reused for the
lifetime of the Geolocator (one instance per process, injected by
auth/service.py).

Layer rule: core/ may not import from api/ or auth/.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

logger = logging.getLogger("whisper.geo")


@dataclass(frozen=True)
class GeoLocation:
    """Approximate location of a network address. Every field is optional."""

    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def label(self) -> str:
        """Most specific human-readable place name, or 'Unknown'."""
        return self.city or self.region or self.country or "Unknown"


def is_public_address(ip: Optional[str]) -> bool:
    """Return True only for well-formed, globally routable addresses."""
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved or addr.is_multicast)


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class Geolocator:
    """HTTP geolocation client.

    url_template must contain "{ip}", e.g. "https://ipapi.co/{ip}/json/".
    The response is expected to be a flat JSON object; both the ipapi.co
    key names (country_name, region, city, latitude, longitude) and the
    ip-api.com names (country, regionName, city, lat, lon) are understood.
    """

    def __init__(self, url_template: str = "", timeout: float = 3.0) -> None:
        self._url_template = url_template
        self._timeout = timeout
        self._session: Optional[requests.Session] = None

    @property
    def enabled(self) -> bool:
        return bool(self._url_template)

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.max_redirects = 3
        return self._session

    def lookup(self, ip: Optional[str]) -> Optional[GeoLocation]:
        if not self.enabled or not is_public_address(ip):
            return None
        try:
            resp = self._get_session().get(self._url_template.format(ip=ip), timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Geo lookup failed for %s: %s", ip, e)
            return None
        if not isinstance(data, dict) or data.get("error") or data.get("status") == "fail":
            return None
        return GeoLocation(
            country=data.get("country_name") or data.get("country"),
            region=data.get("region") or data.get("regionName"),
            city=data.get("city"),
            latitude=_as_float(data.get("latitude", data.get("lat"))),
            longitude=_as_float(data.get("longitude", data.get("lon"))),
        )

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
