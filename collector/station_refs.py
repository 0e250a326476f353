"""
Netatmo Crawler - Station reference parser
Pulls weathermap station locators out of free-form configuration text.
"""

import logging
import re
from typing import List
from urllib.parse import parse_qs, urlsplit

from config import NAMING_COUNTER, NAMING_ID, NETATMO_WEATHERMAP_HOST
from core.models import StationDescriptor

logger = logging.getLogger("station_refs")

_LOCATOR_PATTERN = re.compile(
    r"https?://" + re.escape(NETATMO_WEATHERMAP_HOST) + r"/[A-Za-z0-9%&=?._~:/+\-#]*"
)

# The weathermap writes `stationid`; older shared links use `station`.
_STATION_PARAMS = ("stationid", "station")


def find_locators(text: str) -> List[str]:
    """Candidate locators in first-seen order, duplicates removed."""
    seen = set()
    locators = []
    for match in _LOCATOR_PATTERN.finditer(text or ""):
        locator = match.group(0)
        if locator in seen:
            continue
        seen.add(locator)
        locators.append(locator)
    return locators


def extract_station_id(locator: str) -> str:
    """Percent-decoded station id from the locator query, or "" when absent."""
    parts = urlsplit(locator)
    # Weathermap links sometimes carry the query after the fragment marker.
    query = parts.query or parts.fragment.partition("?")[2]
    params = parse_qs(query, keep_blank_values=False)
    for name in _STATION_PARAMS:
        values = params.get(name)
        if values and values[0].strip():
            return values[0].strip()
    return ""


def parse_station_references(text: str, naming: str = NAMING_COUNTER) -> List[StationDescriptor]:
    """
    Parse configuration text into station descriptors.

    Args:
        text: Free-form text holding zero or more weathermap URLs
        naming: "counter" (station1, station2, ...) or "id" (raw station id)

    Returns:
        Ordered, de-duplicated descriptors. Empty when nothing usable was found.
    """
    descriptors: List[StationDescriptor] = []
    seen_ids = set()
    for locator in find_locators(text):
        station_id = extract_station_id(locator)
        if not station_id:
            logger.debug(f"Skipping locator without station id: {locator}")
            continue
        if station_id in seen_ids:
            continue
        seen_ids.add(station_id)
        if naming == NAMING_ID:
            display_name = station_id
        else:
            display_name = f"station{len(descriptors) + 1}"
        descriptors.append(StationDescriptor(raw_locator=locator, station_id=station_id, display_name=display_name))
    return descriptors
