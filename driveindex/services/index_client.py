"""
Index Client
HTTP client for Google-Drive-style index servers with retry, backoff and mirror failover

The index frontend fetches folder contents with POST requests carrying a small
JSON body; this client mimics those requests and normalizes the responses.
"""
import logging
import random
import re
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union
from urllib.parse import quote

import requests
from bs4 import BeautifulSoup

from ..core.endpoint_manager import EndpointManager
from ..core.errors import (
    AuthError,
    HttpStatusError,
    RateLimited,
    ResponseShapeError,
    ServerError,
    TransportError,
)
from ..models.endpoint import Endpoint
from ..models.remote_entry import FOLDER_MIME_TYPE, EntryKind, FileInfo, FolderPage, RemoteEntry
from ..utils.name_parser import parse_file_size

logger = logging.getLogger(__name__)

# RFC 3986 unreserved + sub-delims + "@"; ":" is deliberately left out.
_SEGMENT_SAFE = "-._~!$&'()*+,;=@"
_DRIVE_SEGMENT_RE = re.compile(r"^\d+:$")

AUTH_KEYWORDS = ("token", "auth", "expired", "invalid", "unauthorized", "forbidden", "access denied")


def encode_path(path: str) -> str:
    """
    Percent-encode a remote path.

    The leading drive marker ("1:") and the "/" separators stay as they are.
    Paths that already carry a query string are returned verbatim.
    """
    path = path or "/"
    if not path.startswith("/"):
        path = "/" + path
    if "?" in path:
        return path

    encoded = []
    for idx, segment in enumerate(path.split("/")):
        if idx <= 1 and _DRIVE_SEGMENT_RE.match(segment):
            encoded.append(segment)
        else:
            encoded.append(quote(segment, safe=_SEGMENT_SAFE))
    return "/".join(encoded)


def join_url(base_url: str, path: str) -> str:
    return str(base_url or "").rstrip("/") + encode_path(path)


def looks_like_auth_failure(body_text: str) -> bool:
    lowered = (body_text or "").lower()
    return any(keyword in lowered for keyword in AUTH_KEYWORDS)


class IndexClient:
    """Remote index client bound to an EndpointManager"""

    def __init__(
        self,
        endpoint_manager: Optional[EndpointManager] = None,
        settings=None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.endpoint_manager = endpoint_manager
        self.settings = settings if settings is not None else {}
        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": str(self.settings.get("user_agent", "") or "Mozilla/5.0 (compatible; driveindex/1.0)"),
        })
        self._sleep = sleep
        self._rng = rng or random.Random()

    # --- settings -------------------------------------------------------

    def _timeout(self) -> float:
        try:
            return max(1.0, float(self.settings.get("request_timeout_seconds", 30.0) or 30.0))
        except (TypeError, ValueError):
            return 30.0

    def _int_setting(self, key: str, default: int) -> int:
        try:
            return max(0, int(self.settings.get(key, default)))
        except (TypeError, ValueError):
            return default

    def _float_setting(self, key: str, default: float) -> float:
        try:
            return max(0.0, float(self.settings.get(key, default)))
        except (TypeError, ValueError):
            return default

    def _jitter(self, upper: float) -> float:
        return self._rng.uniform(0.0, upper) if upper > 0 else 0.0

    # --- public API -----------------------------------------------------

    def list_folder(
        self,
        endpoint: Union[str, Endpoint, None],
        path: str,
        page_token: Optional[str] = None,
        page_index: int = 0,
    ) -> FolderPage:
        """List one page of a folder"""
        body = {
            "id": "",
            "type": "folder",
            "password": "",
            "page_token": page_token,
            "page_index": int(page_index or 0),
        }
        response, served_by = self._execute("POST", self._base_of(endpoint), path, body)
        data = self._decode_json(response, served_by, path)
        files, next_token = self._normalize_listing(data, served_by, path)

        entries = []
        for item in files:
            entry = self._parse_item(item, path)
            if entry is not None:
                entries.append(entry)
        return FolderPage(entries=entries, next_page_token=next_token, endpoint=served_by)

    def list_folder_all(self, endpoint: Union[str, Endpoint, None], path: str) -> List[RemoteEntry]:
        """
        Drain every page of a folder.

        page_token and page_index advance together; the index serves stale
        pages when only one of them moves. Pages after the first go to the
        endpoint that served the previous page.
        """
        entries: List[RemoteEntry] = []
        current = self._base_of(endpoint)
        token: Optional[str] = None
        index = 0
        seen_tokens: Set[str] = set()

        while True:
            page = self.list_folder(current, path, page_token=token, page_index=index)
            entries.extend(page.entries)
            current = page.endpoint or current

            next_token = page.next_page_token
            if not next_token:
                break
            if next_token in seen_tokens:
                logger.warning("Repeated page token while listing %s, stopping at page %d", path, index)
                break
            seen_tokens.add(next_token)
            token = next_token
            index += 1

            delay = self._float_setting("page_delay_seconds", 1.0) + self._jitter(
                self._float_setting("page_jitter_seconds", 0.5)
            )
            self._sleep(delay)

        logger.debug("Listed %d entries across %d page(s) in %s", len(entries), index + 1, path)
        return entries

    def get_download_url(self, endpoint: Union[str, Endpoint, None], path: str) -> str:
        """Signed download URL for a file, resolved against the serving endpoint"""
        body = {"id": "", "type": "file", "password": ""}
        response, served_by = self._execute("POST", self._base_of(endpoint), path, body)
        data = self._decode_json(response, served_by, path)

        link = data.get("link") if isinstance(data, dict) else None
        if not isinstance(link, str) or not link.strip():
            raise ResponseShapeError("Download link missing from response", endpoint=served_by, path=path)
        link = link.strip()
        if link.startswith(("http://", "https://")):
            return link
        return join_url(served_by, link)

    def get_file_info(self, endpoint: Union[str, Endpoint, None], path: str) -> FileInfo:
        response, _ = self._execute("HEAD", self._base_of(endpoint), path)
        headers = response.headers
        length = headers.get("content-length")
        try:
            size = int(length) if length is not None else None
        except (TypeError, ValueError):
            size = None
        return FileInfo(
            size=size,
            content_type=headers.get("content-type"),
            modified_at=headers.get("last-modified"),
        )

    # --- request layering -----------------------------------------------

    def _base_of(self, endpoint: Union[str, Endpoint, None]) -> str:
        if isinstance(endpoint, Endpoint):
            return endpoint.base_url
        if endpoint:
            return str(endpoint).rstrip("/")
        if self.endpoint_manager is None:
            raise ValueError("No endpoint given and no EndpointManager configured")
        return self.endpoint_manager.select().base_url

    def _headers(self, method: str) -> Dict[str, str]:
        if method == "POST":
            return {
                "Content-Type": "application/json",
                "Accept": "application/json, text/plain, */*",
            }
        return {"Accept": "*/*"}

    def _report_success(self, base_url: str):
        if self.endpoint_manager:
            self.endpoint_manager.report_success(base_url)

    def _report_error(self, base_url: str):
        if self.endpoint_manager:
            self.endpoint_manager.report_error(base_url)

    def _send(self, method: str, base_url: str, path: str, body: Optional[Dict[str, Any]]) -> requests.Response:
        """One logical request with fixed-delay retries on transport failures"""
        url = join_url(base_url, path)
        retries = self._int_setting("transport_retries", 3)
        delay = self._float_setting("transport_retry_delay_seconds", 2.0)

        for attempt in range(retries + 1):
            try:
                return self.session.request(
                    method,
                    url,
                    json=body,
                    headers=self._headers(method),
                    timeout=self._timeout(),
                    allow_redirects=True,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                self._report_error(base_url)
                if attempt >= retries:
                    raise TransportError(f"Transport failure: {exc}", endpoint=base_url, path=path) from exc
                logger.warning("Request to %s failed (attempt %d): %s", url, attempt + 1, exc)
                if delay > 0:
                    self._sleep(delay)
        raise TransportError("Transport failure", endpoint=base_url, path=path)

    def _execute(
        self,
        method: str,
        base_url: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[requests.Response, str]:
        """
        Issue a request applying the retry policy.

        Returns the response and the base URL that served it.
        """
        current = base_url
        tried = {current}
        rate_attempt = 0
        server_attempt = 0

        while True:
            response = self._send(method, current, path, body)
            status = response.status_code

            if status == 200:
                self._report_success(current)
                return response, current

            if status in (429, 503):
                if status == 503:
                    self._report_error(current)
                retries = self._int_setting("rate_limit_retries", 4)
                if rate_attempt >= retries:
                    raise RateLimited(
                        f"Rate limited after {rate_attempt} retries (HTTP {status})",
                        endpoint=current, path=path, status_code=status,
                    )
                delay = self._float_setting("rate_limit_backoff_seconds", 2.0) * (2 ** rate_attempt)
                delay += self._jitter(self._float_setting("rate_limit_jitter_seconds", 1.0))
                rate_attempt += 1
                logger.warning(
                    "HTTP %d from %s, retry %d/%d in %.1fs", status, current, rate_attempt, retries, delay,
                )
                self._sleep(delay)
                continue

            if status >= 500:
                self._report_error(current)
                body_text = self._body_text(response)
                if looks_like_auth_failure(body_text):
                    raise AuthError(
                        f"Authentication failure (HTTP {status}): {body_text[:200]}",
                        endpoint=current, path=path,
                    )

                alternative = self._alternative_endpoint(tried)
                if alternative:
                    logger.warning("HTTP %d from %s, failing over to %s", status, current, alternative)
                    tried.add(alternative)
                    current = alternative
                    continue

                retries = self._int_setting("server_error_retries", 2)
                if server_attempt >= retries:
                    raise ServerError(
                        f"Server error (HTTP {status}) after {server_attempt} retries",
                        endpoint=current, path=path, status_code=status,
                    )
                delay = self._float_setting("server_error_backoff_seconds", 2.0) * (2 ** server_attempt)
                delay += self._jitter(self._float_setting("rate_limit_jitter_seconds", 1.0))
                server_attempt += 1
                logger.warning(
                    "HTTP %d from %s, retry %d/%d in %.1fs", status, current, server_attempt, retries, delay,
                )
                self._sleep(delay)
                continue

            raise HttpStatusError(f"HTTP {status}", endpoint=current, path=path, status_code=status)

    def _alternative_endpoint(self, tried: Set[str]) -> Optional[str]:
        if self.endpoint_manager is None:
            return None
        candidate = self.endpoint_manager.select().base_url
        if candidate in tried:
            return None
        return candidate

    @staticmethod
    def _body_text(response: requests.Response) -> str:
        """Response body as plain text; HTML error pages are reduced to their text"""
        try:
            text = response.text or ""
        except (UnicodeDecodeError, AttributeError):
            return ""
        content_type = str(response.headers.get("content-type", "") or "").lower()
        if "html" in content_type or text.lstrip().startswith("<"):
            text = BeautifulSoup(text, "html.parser").get_text(" ", strip=True)
        return text

    # --- response normalization -----------------------------------------

    @staticmethod
    def _decode_json(response: requests.Response, served_by: str, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ResponseShapeError("Response is not valid JSON", endpoint=served_by, path=path) from exc

    @staticmethod
    def _normalize_listing(data: Any, served_by: str, path: str) -> Tuple[List[Any], Optional[str]]:
        """Collapse the wrapped and flat listing shapes into (files, next_page_token)"""
        if not isinstance(data, dict):
            raise ResponseShapeError("Listing response is not an object", endpoint=served_by, path=path)

        inner = data.get("data")
        if isinstance(inner, dict) and isinstance(inner.get("files"), list):
            files = inner["files"]
            token = inner.get("nextPageToken") or data.get("nextPageToken")
        elif isinstance(data.get("files"), list):
            files = data["files"]
            token = data.get("nextPageToken")
        else:
            raise ResponseShapeError("Unknown listing shape", endpoint=served_by, path=path)

        token = str(token) if token else None
        return files, token

    @staticmethod
    def _parse_size(raw: Any) -> int:
        if isinstance(raw, bool):
            return 0
        if isinstance(raw, int):
            return raw
        if isinstance(raw, float):
            return int(raw)
        if isinstance(raw, str):
            raw = raw.strip()
            if raw.isdigit():
                return int(raw)
            return parse_file_size(raw)
        return 0

    def _parse_item(self, item: Any, current_path: str) -> Optional[RemoteEntry]:
        if not isinstance(item, dict):
            logger.debug("Skipping malformed listing item in %s: %r", current_path, item)
            return None

        raw_name = str(item.get("name") or item.get("title") or "")
        mime_type = str(item.get("mimeType") or item.get("mime_type") or "")
        is_folder = mime_type == FOLDER_MIME_TYPE or raw_name.endswith("/")
        name = raw_name.rstrip("/")
        if not name:
            return None

        path = (current_path or "/").rstrip("/") + "/" + name
        if is_folder:
            path += "/"

        return RemoteEntry(
            name=name,
            kind=EntryKind.FOLDER if is_folder else EntryKind.FILE,
            path=path,
            size=self._parse_size(item.get("size")),
            content_type=mime_type,
            modified_at=item.get("modifiedTime") or item.get("modified_time"),
        )
