# matching.py

"""
Route matching for riders.

A route matches a search when the rider's pickup is within
MAX_DEVIATION_KM of the route's pickup and the rider's drop-off is within
MAX_DEVIATION_KM of the route's drop-off. Distances are great-circle
distances (haversine) on a sphere of radius EARTH_RADIUS_KM.
"""

import math
from typing import Iterable, List, NamedTuple

EARTH_RADIUS_KM  = 6371.0
MAX_DEVIATION_KM = 3.0


class Point(NamedTuple):
    lat: float
    lng: float


def haversine_km(a: Point, b: Point) -> float:
    """Great-circle distance between two (lat, lng) points, in km."""
    lat1, lng1 = math.radians(a[0]), math.radians(a[1])
    lat2, lng2 = math.radians(b[0]), math.radians(b[1])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = (math.sin(dlat / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def route_distances(pickup: Point, dropoff: Point, route) -> tuple:
    """(pickup distance, drop-off distance) from the rider's points to a route."""
    return (
        haversine_km(pickup, Point(route.pickup_lat, route.pickup_lng)),
        haversine_km(dropoff, Point(route.dropoff_lat, route.dropoff_lng)),
    )


def is_match(pickup: Point, dropoff: Point, route) -> bool:
    pickup_km, dropoff_km = route_distances(pickup, dropoff, route)
    return pickup_km <= MAX_DEVIATION_KM and dropoff_km <= MAX_DEVIATION_KM


def find_matching_routes(pickup: Point, dropoff: Point, routes: Iterable) -> List:
    """
    Keep the routes whose endpoints are both within MAX_DEVIATION_KM of the
    rider's points. Order follows the input; nothing is ranked.

    `routes` can be any objects exposing pickup_lat/pickup_lng and
    dropoff_lat/dropoff_lng.
    """
    return [r for r in routes if is_match(pickup, dropoff, r)]
