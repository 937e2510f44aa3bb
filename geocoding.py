#!/usr/bin/env python3
# geocoding.py

import os
import argparse
import logging
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from geopy.exc import GeopyError
from geopy.geocoders import Nominatim

load_dotenv()

logger = logging.getLogger("sharewheel.geocoding")

GEOCODER_URL        = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org")
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "ShareWheel App")
GEOCODER_COUNTRY    = os.getenv("GEOCODER_COUNTRY", "pk")
TIMEOUT_SECONDS     = 10

_url = urlparse(GEOCODER_URL)

# Nominatim refuses requests without an identifying User-Agent
geolocator = Nominatim(
    user_agent=GEOCODER_USER_AGENT,
    domain=_url.netloc or _url.path,
    scheme=_url.scheme or "https",
    timeout=TIMEOUT_SECONDS,
)


class GeocodingError(RuntimeError):
    pass


def _as_dict(location, lat=None, lng=None) -> dict:
    return {
        "display_name": location.address,
        "lat": location.latitude if lat is None else lat,
        "lng": location.longitude if lng is None else lng,
    }

def geocode(address: str) -> Optional[dict]:
    """
    Forward lookup. Returns {"display_name", "lat", "lng"} for the best hit,
    or None when nothing matched.
    """
    if not address.strip():
        return None
    try:
        location = geolocator.geocode(
            address,
            exactly_one=True,
            country_codes=GEOCODER_COUNTRY or None,
        )
    except GeopyError as e:
        logger.error("Geocoding %r failed: %s", address, e)
        raise GeocodingError(f"Geocoding failed: {e}") from e
    if location is None:
        return None
    return _as_dict(location)

def reverse_geocode(lat: float, lng: float) -> Optional[dict]:
    """Coordinates to the nearest address, or None."""
    try:
        location = geolocator.reverse((lat, lng), exactly_one=True)
    except GeopyError as e:
        logger.error("Reverse geocoding %s,%s failed: %s", lat, lng, e)
        raise GeocodingError(f"Geocoding failed: {e}") from e
    if location is None or not location.address:
        return None
    return _as_dict(location, lat, lng)

def main():
    parser = argparse.ArgumentParser(description="Look up addresses and coordinates")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("address", nargs="?", help="Address to geocode")
    group.add_argument("-r", "--reverse", nargs=2, type=float, metavar=("LAT", "LNG"),
                       help="Reverse geocode a coordinate pair")
    args = parser.parse_args()

    if args.reverse:
        result = reverse_geocode(*args.reverse)
    else:
        result = geocode(args.address)

    if result is None:
        print("No match found")
        return
    print(result["display_name"])
    print(f"{result['lat']:.6f}, {result['lng']:.6f}")

if __name__ == "__main__":
    main()
