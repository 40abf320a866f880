"""HTTP client for the capture viewer's stats endpoints."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests
from requests.auth import HTTPDigestAuth
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from horizon.core import DisplayPreferences
from horizon.exceptions import MalformedResponseError, PreferencesLoadError, TransportError

from .settings import ViewerConfig

LOGGER = logging.getLogger(__name__)

SETTINGS_PATH = "user/settings"
STATS_PATH = "stats.json"
DETAIL_STATS_PATH = "dstats.json"


@dataclass
class StatsService:
    """Blocking client; callers on the event loop run it in an executor."""

    base_url: str
    username: Optional[str] = None
    password: Optional[str] = None
    timeout_s: float = 10.0
    verify_tls: bool = True
    session: Optional[requests.Session] = None

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()
        if self.username:
            self.session.auth = HTTPDigestAuth(self.username, self.password or "")

    @classmethod
    def from_config(cls, config: ViewerConfig) -> "StatsService":
        return cls(
            base_url=config.base_url,
            username=config.username,
            password=config.password,
            timeout_s=config.timeout_s,
            verify_tls=config.verify_tls,
        )

    def _get_json(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.get(
                url,
                params=dict(params or {}),
                timeout=timeout or self.timeout_s,
                verify=self.verify_tls,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"GET {url} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"GET {url} returned invalid JSON") from exc

    def get_settings(self) -> DisplayPreferences:
        try:
            payload = self._get_json(SETTINGS_PATH)
        except (TransportError, MalformedResponseError) as exc:
            raise PreferencesLoadError(str(exc)) from exc
        if not isinstance(payload, dict):
            raise PreferencesLoadError("User settings must be a JSON object")
        timezone = payload.get("timezone") or "local"
        return DisplayPreferences(timezone=str(timezone))

    @retry(reraise=True, stop=stop_after_attempt(3), wait=wait_fixed(1), retry=retry_if_exception_type(TransportError))
    def get_moloch_stats(self, query: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Return the aggregate row of every capture node."""
        payload = self._get_json(STATS_PATH, params=query)
        rows = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise MalformedResponseError("Stats listing must contain a list of node rows")
        for row in rows:
            if not isinstance(row, dict) or not row.get("nodeName"):
                raise MalformedResponseError(f"Stats row without nodeName: {row!r}")
        LOGGER.debug("Loaded stats for %d nodes", len(rows))
        return rows

    def get_detail_stats(
        self,
        *,
        node_name: str,
        start: int,
        stop: int,
        step: int,
        interval: int,
        name: str,
        timeout: Optional[float] = None,
    ) -> List[Optional[float]]:
        params = {
            "nodeName": node_name,
            "start": start,
            "stop": stop,
            "step": step,
            "interval": interval,
            "name": name,
        }
        payload = self._get_json(DETAIL_STATS_PATH, params=params, timeout=timeout)
        if not isinstance(payload, list):
            raise MalformedResponseError(f"Detail stats for {node_name} must be a JSON list")
        values: List[Optional[float]] = []
        for item in payload:
            if item is None:
                values.append(None)
                continue
            if isinstance(item, bool):
                raise MalformedResponseError(f"Non-numeric bucket value {item!r} for {node_name}")
            try:
                value = float(item)
            except (TypeError, ValueError) as exc:
                raise MalformedResponseError(f"Non-numeric bucket value {item!r} for {node_name}") from exc
            values.append(None if math.isnan(value) or math.isinf(value) else value)
        return values
