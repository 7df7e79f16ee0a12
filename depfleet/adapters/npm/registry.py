from __future__ import annotations

import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Dict, List, Tuple
from urllib.parse import quote, urlencode

from depfleet.adapters.base import RegistryClient
from depfleet.core.errors import InvalidArgument, UpstreamError
from depfleet.core.models import SearchHit

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_URL = "https://api.npms.io/v2/search"
DEFAULT_DETAIL_URL = "https://api.npms.io/v2/package"
DEFAULT_USER_AGENT = "depfleet/0.1 (+https://api.npms.io)"


class NpmsRegistryClient:
    """Client for the npms.io search and package detail endpoints."""

    def __init__(
        self,
        search_url: str = DEFAULT_SEARCH_URL,
        detail_url: str = DEFAULT_DETAIL_URL,
        search_timeout_sec: float = 15,
        detail_timeout_sec: float = 60,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.search_url = search_url
        self.detail_url = detail_url.rstrip("/")
        self.search_timeout_sec = search_timeout_sec
        self.detail_timeout_sec = detail_timeout_sec
        self.user_agent = user_agent

    def search(self, query: str, offset: int, limit: int) -> Tuple[List[SearchHit], int]:
        if not query:
            raise InvalidArgument("empty query")
        url = f"{self.search_url}?{urlencode({'from': offset, 'q': query, 'size': limit})}"
        data = self._get_json(url, self.search_timeout_sec)

        hits: List[SearchHit] = []
        try:
            total = int(data.get("total") or 0)
            for result in data.get("results") or []:
                package = result.get("package") or {}
                hits.append(SearchHit(name=package["name"], latest_version=package.get("version")))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(f"unexpected search response shape: {exc}", body=json.dumps(data)) from exc
        return hits, total

    def fetch_latest_version(self, name: str) -> str:
        if not name:
            raise InvalidArgument("empty package name")
        url = f"{self.detail_url}/{quote(name, safe='@')}"
        data = self._get_json(url, self.detail_timeout_sec)
        version = (((data.get("collected") or {}).get("metadata") or {}).get("version"))
        if not isinstance(version, str) or not version:
            raise UpstreamError(f"no version in registry detail for {name}", body=json.dumps(data))
        return version

    def _get_json(self, url: str, timeout: float) -> Dict[str, Any]:
        req = urllib.request.Request(url, headers={"User-Agent": self.user_agent}, method="GET")
        logger.debug("GET %s", url)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                status = resp.getcode()
                body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            raise UpstreamError(f"registry HTTP {exc.code} for {url}", status=exc.code, body=body) from exc
        except urllib.error.URLError as exc:
            raise UpstreamError(f"registry unreachable: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UpstreamError(f"registry timed out after {timeout}s") from exc
        except http.client.IncompleteRead as exc:
            body = (exc.partial or b"").decode("utf-8", errors="replace")
            raise UpstreamError(f"registry response truncated for {url}", body=body) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise UpstreamError(f"registry connection failed: {exc}") from exc
        if not 200 <= status < 300:
            raise UpstreamError(f"registry returned {status} for {url}", status=status, body=body)
        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            raise UpstreamError(f"registry returned invalid JSON: {exc}", status=status, body=body) from exc
        if not isinstance(data, dict):
            raise UpstreamError("registry returned a non-object JSON document", status=status, body=body)
        return data


def create_client(
    search_url: str = DEFAULT_SEARCH_URL,
    detail_url: str = DEFAULT_DETAIL_URL,
    search_timeout_sec: float = 15,
    detail_timeout_sec: float = 60,
    user_agent: str = DEFAULT_USER_AGENT,
) -> RegistryClient:
    return NpmsRegistryClient(
        search_url=search_url,
        detail_url=detail_url,
        search_timeout_sec=search_timeout_sec,
        detail_timeout_sec=detail_timeout_sec,
        user_agent=user_agent,
    )
