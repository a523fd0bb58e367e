"""
IP Geolocation Helpers

This module handles:
- Extracting client IPs from activity overview text
- Classifying private/reserved addresses
- Resolving public addresses through a pluggable lookup
"""
import ipaddress
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from streamguard.config import GeoLookupConfig

logger = logging.getLogger(__name__)

# ISO 3166-1 alpha-2 code to display name
COUNTRY_NAMES: Dict[str, str] = {
    "US": "United States", "GB": "United Kingdom", "CA": "Canada", "DE": "Germany",
    "FR": "France", "AU": "Australia", "JP": "Japan", "CN": "China", "IN": "India",
    "BR": "Brazil", "RU": "Russia", "KR": "South Korea", "IT": "Italy", "ES": "Spain",
    "MX": "Mexico", "NL": "Netherlands", "SE": "Sweden", "NO": "Norway", "DK": "Denmark",
    "FI": "Finland", "PL": "Poland", "CH": "Switzerland", "AT": "Austria", "BE": "Belgium",
    "NZ": "New Zealand", "SG": "Singapore", "HK": "Hong Kong", "TW": "Taiwan",
    "IE": "Ireland", "PT": "Portugal", "CZ": "Czech Republic", "GR": "Greece",
    "IL": "Israel", "ZA": "South Africa", "AR": "Argentina", "CL": "Chile",
    "CO": "Colombia", "TH": "Thailand", "MY": "Malaysia", "PH": "Philippines",
    "ID": "Indonesia", "VN": "Vietnam", "AE": "United Arab Emirates", "SA": "Saudi Arabia",
    "EG": "Egypt", "TR": "Turkey", "UA": "Ukraine", "RO": "Romania", "HU": "Hungary",
    "SK": "Slovakia", "BG": "Bulgaria", "HR": "Croatia", "RS": "Serbia", "LT": "Lithuania",
    "LV": "Latvia", "EE": "Estonia", "IS": "Iceland", "LU": "Luxembourg",
}

_LABELLED_IP = re.compile(r"IP(?:\s+address)?:\s*([0-9a-fA-F.:]+)", re.IGNORECASE)
_BARE_IPV4 = re.compile(r"\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})\b")


class GeoLookupError(Exception):
    """The lookup service could not be reached or returned garbage."""


@dataclass
class GeoLocation:
    country_code: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None


@dataclass
class GeoLookupResult:
    geo: GeoLocation
    is_private_ip: bool


class GeoResolver(Protocol):
    def lookup(self, ip: str) -> Optional[GeoLocation]:
        """Return the location of a public address, or None if unknown."""


class NoopGeoResolver:
    """Stands in when no lookup service is configured; every lookup fails.

    Failing keeps activities pending, so they are located once GEO_LOOKUP_URL is set.
    """

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        raise GeoLookupError(f"No geolocation service configured for {ip}")


class HttpGeoResolver:
    """Resolves addresses against a JSON lookup endpoint.

    The response is expected in the ip-api.com layout (countryCode, country,
    regionName, city, lat, lon, timezone, with status "fail" for unknown
    addresses).
    """

    def __init__(self, config: Optional[GeoLookupConfig] = None):
        self.config = config or GeoLookupConfig()

    def lookup(self, ip: str) -> Optional[GeoLocation]:
        url = self.config.url_template.format(ip=ip)
        try:
            response = requests.get(url, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise GeoLookupError(f"Lookup for {ip} failed: {e}") from e

        if data.get("status") == "fail":
            logger.debug(f"No geolocation for {ip}: {data.get('message')}")
            return None
        return self._to_location(data)

    @staticmethod
    def _to_location(data: Dict[str, Any]) -> GeoLocation:
        code = data.get("countryCode") or None
        return GeoLocation(
            country_code=code,
            country=data.get("country") or (country_name(code) if code else None),
            region=data.get("regionName") or data.get("region") or None,
            city=data.get("city") or None,
            latitude=data.get("lat"),
            longitude=data.get("lon"),
            timezone=data.get("timezone") or None,
        )


def build_resolver(config: Optional[GeoLookupConfig] = None) -> GeoResolver:
    config = config or GeoLookupConfig()
    if config.url_template:
        return HttpGeoResolver(config)
    logger.warning("GEO_LOOKUP_URL is not set; activities will stay pending until it is")
    return NoopGeoResolver()


def country_name(code: str) -> str:
    return COUNTRY_NAMES.get(code.upper(), code)


def normalize_ip(ip: Optional[str]) -> Optional[str]:
    """Strip the IPv4-mapped IPv6 prefix (::ffff:1.2.3.4 -> 1.2.3.4)."""
    if not ip:
        return ip
    ip = ip.strip()
    if ip.lower().startswith("::ffff:"):
        return ip[7:]
    return ip


def is_private_ip(ip: Optional[str]) -> bool:
    """Private, loopback, link-local, unique-local, unspecified or unparseable."""
    if not ip:
        return True
    try:
        address = ipaddress.ip_address(normalize_ip(ip))
    except ValueError:
        return True
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    )


def parse_ip_from_overview(short_overview: Optional[str]) -> Optional[str]:
    """Extract the client address from an activity overview such as "IP address: 1.2.3.4"."""
    if not short_overview:
        return None

    match = _LABELLED_IP.search(short_overview)
    if match and match.group(1):
        return normalize_ip(match.group(1))

    # Fall back to any IPv4-looking token
    match = _BARE_IPV4.search(short_overview)
    if match:
        return normalize_ip(match.group(1))

    return None


def geolocate_ip(ip: str, resolver: GeoResolver) -> GeoLookupResult:
    """Resolve an address; private addresses are never sent to the resolver.

    Raises GeoLookupError when the resolver is unreachable.
    """
    if is_private_ip(ip):
        return GeoLookupResult(geo=GeoLocation(), is_private_ip=True)

    geo = resolver.lookup(normalize_ip(ip))
    if geo is None:
        return GeoLookupResult(geo=GeoLocation(), is_private_ip=False)

    if geo.country_code and not geo.country:
        geo.country = country_name(geo.country_code)
    return GeoLookupResult(geo=geo, is_private_ip=False)
