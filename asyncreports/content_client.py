import logging
from typing import Any, Dict, List, Optional

import requests

from asyncreports.errors import TransientIOError, UnsupportedReportType
from asyncreports.settings import WorkerSettings

logger = logging.getLogger(__name__)


SUPPORTED_CATEGORIES = ("monsters", "creatures", "equipment", "materials", "treasure")

# Served when both endpoints are down and CONTENT_MOCK_FALLBACK is on.
SAMPLE_MONSTERS: List[Dict[str, Any]] = [
    {
        "name": "Bokoblin",
        "id": 1,
        "category": "monsters",
        "description": "The most commonly encountered monster in Hyrule, they live in small groups "
                       "and attack travelers with clubs and other weapons.",
        "image": "https://botw-compendium.herokuapp.com/api/v2/entry/bokoblin/image",
        "common_locations": ["West Necluda", "East Necluda", "Hyrule Field"],
        "drops": ["Bokoblin Horn", "Bokoblin Fang"],
        "dlc": False,
    },
    {
        "name": "Moblin",
        "id": 2,
        "category": "monsters",
        "description": "Large, brutish monsters that are much stronger than Bokoblins. They carry "
                       "massive weapons and can deal significant damage.",
        "image": "https://botw-compendium.herokuapp.com/api/v2/entry/moblin/image",
        "common_locations": ["Central Hyrule", "Hebra", "Gerudo Highlands"],
        "drops": ["Moblin Horn", "Moblin Fang", "Moblin Guts"],
        "dlc": False,
    },
    {
        "name": "Lynel",
        "id": 3,
        "category": "monsters",
        "description": "These fearsome monsters have lived in Hyrule since ancient times.",
        "image": "https://botw-compendium.herokuapp.com/api/v2/entry/lynel/image",
        "common_locations": ["Deep Akkala", "North Tabantha Snowfield", "Coliseum Ruins"],
        "drops": ["Lynel Horn", "Lynel Hoof", "Lynel Guts"],
        "dlc": False,
    },
    {
        "name": "Guardian Stalker",
        "id": 4,
        "category": "monsters",
        "description": "Ancient autonomous weapons that still patrol various areas.",
        "image": "https://botw-compendium.herokuapp.com/api/v2/entry/guardian_stalker/image",
        "common_locations": ["Hyrule Field", "Central Hyrule", "Akkala Highlands"],
        "drops": ["Ancient Screw", "Ancient Spring", "Ancient Gear"],
        "dlc": False,
    },
    {
        "name": "Hinox",
        "id": 5,
        "category": "monsters",
        "description": "A giant cyclops monster that prefers to sleep during the day.",
        "image": "https://botw-compendium.herokuapp.com/api/v2/entry/hinox/image",
        "common_locations": ["West Necluda", "Faron Grasslands", "Hebra"],
        "drops": ["Hinox Toenail"],
        "dlc": False,
    },
]


class CompendiumClient:
    """Hyrule compendium API client used as the report content provider."""

    def __init__(self, settings: WorkerSettings, session: Optional[requests.Session] = None):
        self.base_urls = [settings.content_api_url.rstrip("/")]
        if settings.content_fallback_url:
            self.base_urls.append(settings.content_fallback_url.rstrip("/"))
        self.timeout_s = settings.content_timeout_seconds
        self.mock_fallback = settings.content_mock_fallback
        self._session = session or requests.Session()

    def fetch_content(self, report_type: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """
        Fetch all compendium entries for the category named by report_type.

        Each endpoint is tried in turn; timeout caps every request below the
        configured client timeout.

        Raises:
            UnsupportedReportType: report_type is not a compendium category
            TransientIOError: every endpoint failed and mock fallback is off
        """
        if report_type not in SUPPORTED_CATEGORIES:
            raise UnsupportedReportType(f"unsupported report type: {report_type!r}")

        request_timeout = self.timeout_s if timeout is None else max(0.001, min(timeout, self.timeout_s))
        errors: List[str] = []
        for base_url in self.base_urls:
            url = f"{base_url}/category/{report_type}"
            try:
                return self._get_entries(url, request_timeout)
            except (requests.RequestException, ValueError) as exc:
                logger.warning("content_fetch_failed url=%s error=%s", url, exc)
                errors.append(f"{url}: {exc}")

        if self.mock_fallback and report_type == "monsters":
            logger.warning("content_fetch_mock_fallback report_type=%s", report_type)
            return [dict(entry) for entry in SAMPLE_MONSTERS]
        raise TransientIOError("failed to fetch report content: " + "; ".join(errors))

    def _get_entries(self, url: str, timeout: float) -> List[Dict[str, Any]]:
        resp = self._session.get(url, timeout=timeout)
        resp.raise_for_status()
        content_type = resp.headers.get("Content-Type", "")
        if content_type and "application/json" not in content_type:
            raise ValueError(f"API returned non-JSON content type: {content_type}")
        payload = resp.json()
        if not isinstance(payload, dict):
            raise ValueError(f"API returned {type(payload).__name__} instead of an object")
        data = payload.get("data")
        if not isinstance(data, list):
            raise ValueError("API response has no data list")
        return [entry for entry in data if isinstance(entry, dict)]
