"""
Street-view image URLs.

Builds Google Street View Static API URLs for a coordinate pair. The
similarity scorer and the dashboard both reference properties this way.
"""

from typing import Optional
from urllib.parse import urlencode

STREET_VIEW_ENDPOINT = "https://maps.googleapis.com/maps/api/streetview"

DEFAULT_SIZE = "400x300"
DEFAULT_FOV = 80
DEFAULT_PITCH = 0


def street_view_url(
    latitude: float,
    longitude: float,
    api_key: str,
    size: str = DEFAULT_SIZE,
    fov: int = DEFAULT_FOV,
    pitch: int = DEFAULT_PITCH,
) -> str:
    """
    Street View image URL for a location.

    Args:
        latitude: Latitude in decimal degrees
        longitude: Longitude in decimal degrees
        api_key: Google Maps API key
        size: Image size as WIDTHxHEIGHT
        fov: Horizontal field of view in degrees
        pitch: Camera pitch in degrees

    Returns:
        Fully-qualified image URL
    """
    params = {
        "size": size,
        "location": f"{latitude},{longitude}",
        "fov": fov,
        "pitch": pitch,
        "key": api_key,
    }
    return f"{STREET_VIEW_ENDPOINT}?{urlencode(params, safe=',')}"


def optional_street_view_url(
    latitude: Optional[float],
    longitude: Optional[float],
    api_key: str,
) -> Optional[str]:
    """Street View URL, or None when either coordinate is missing."""
    if latitude is None or longitude is None:
        return None
    return street_view_url(latitude, longitude, api_key)
