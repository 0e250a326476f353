"""
Netatmo Crawler - Collector Module
Station references, weathermap token and public station measures.
"""

from .station_refs import parse_station_references
from .credentials import CredentialCache
from .netatmo_fetcher import StationFetcher, flatten_public_measures

__all__ = [
    "parse_station_references",
    "CredentialCache",
    "StationFetcher", "flatten_public_measures",
]
