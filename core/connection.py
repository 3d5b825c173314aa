import logging
import os
from typing import Any, Dict, Optional

import requests

from .errors import FetchError
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Configuration via Environment Variables (with defaults)
USGS_BASE_URL = os.environ.get("USGS_BASE_URL", "https://waterservices.usgs.gov").rstrip("/")
USGS_TIMEOUT = float(os.environ.get("USGS_TIMEOUT", "30"))
USGS_CALLS_PER_SECOND = float(os.environ.get("USGS_CALLS_PER_SECOND", "5"))
USGS_USER_AGENT = os.environ.get("USGS_USER_AGENT", "NM-StreamConditions/1.0")

IV_PATH = "/nwis/iv/"
STAT_PATH = "/nwis/stat/"


class USGSConnection:
    """Shared HTTP session for the USGS water services."""

    _instance: Optional["USGSConnection"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(USGSConnection, cls).__new__(cls)
            cls._instance._init()
        return cls._instance

    def _init(self):
        self.base_url = USGS_BASE_URL
        self.timeout = USGS_TIMEOUT
        self.rate_limiter = RateLimiter(calls_per_second=USGS_CALLS_PER_SECOND)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": USGS_USER_AGENT})

    def _get(self, path: str, params: Dict[str, Any], accept: str) -> requests.Response:
        url = f"{self.base_url}{path}"
        self.rate_limiter.wait()
        try:
            resp = self.session.get(url, params=params, headers={"Accept": accept}, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(
                f"USGS request failed: {e}",
                details={"url": url, "params": params},
            ) from e

        if not resp.ok:
            raise FetchError(
                f"USGS API request failed: {resp.status_code} {resp.reason}",
                details={"url": url, "status_code": resp.status_code},
            )
        return resp

    def get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._get(path, params, "application/json")
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"USGS returned invalid JSON: {e}", details={"path": path}) from e

    def get_text(self, path: str, params: Dict[str, Any]) -> str:
        return self._get(path, params, "text/plain").text

    def check_health(self) -> dict:
        """Cheap reachability probe against the instantaneous-values service."""
        try:
            resp = self.session.head(f"{self.base_url}{IV_PATH}", timeout=5)
            status = "connected" if resp.status_code < 500 else "degraded"
            return {"status": status, "status_code": resp.status_code, "base_url": self.base_url}
        except requests.RequestException as e:
            return {"status": "disconnected", "error": str(e), "base_url": self.base_url}

    def close(self):
        self.session.close()
        logger.info("[CONNECTION] USGS session closed")


# Singleton instance
usgs_conn = USGSConnection()
