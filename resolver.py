from __future__ import annotations

import json
import logging
import re
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from config import API_BASE_URL, REQUEST_TIMEOUT_SEC, USER_AGENT
from models import AuthFlow, AuthStatus, SourceInfo
from utils import safe_float

logger = logging.getLogger(__name__)

_VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?)/|.*[?&]v=)|youtu\.be/)([^\"&?/\s]{11})"
)
_BARE_ID_RE = re.compile(r"[A-Za-z0-9_-]{11}")
WATCH_URL = "https://www.youtube.com/watch?v={}"


class ResolverError(RuntimeError):
    """Resolver request failed; `error` is the summary, `details` the diagnostic."""

    def __init__(self, error: str, details: str = ""):
        super().__init__(f"{error}: {details}" if details else error)
        self.error = error
        self.details = details


def extract_video_id(locator: str) -> str:
    match = _VIDEO_ID_RE.search(locator or "")
    return match.group(1) if match else locator


def canonical_source_url(locator: str) -> str:
    """Plain watch URL for `locator` (a link or a bare id), dropping playlist and time params."""
    video_id = extract_video_id((locator or "").strip())
    if not _BARE_ID_RE.fullmatch(video_id):
        raise ResolverError(
            "Invalid YouTube URL",
            f"Could not extract a valid 11-character video ID. Extracted: {video_id}",
        )
    return WATCH_URL.format(video_id)


class SourceResolverClient:
    """
    HTTP client for the source resolver service: track info, the derived stream
    URL and the device-code sign-in flow. Calls block; run them off the event loop.
    """

    def __init__(self, base_url: str = API_BASE_URL, timeout: float = REQUEST_TIMEOUT_SEC):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str, **query: str) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            url += "?" + urlencode(query)
        return url

    def _request_json(self, path: str, method: str = "GET", **query: str) -> dict:
        url = self._url(path, **query)
        data = b"" if method == "POST" else None
        req = Request(url, data=data, method=method, headers={"User-Agent": USER_AGENT})
        try:
            with urlopen(req, timeout=self.timeout) as response:
                body = response.read()
        except HTTPError as e:
            payload = _decode_error_body(e)
            raise ResolverError(
                str(payload.get("error") or f"HTTP {e.code}"),
                str(payload.get("details") or e.reason or ""),
            ) from e
        except (URLError, OSError) as e:
            raise ResolverError("Resolver unreachable", str(getattr(e, "reason", e))) from e

        try:
            payload = json.loads(body.decode("utf-8"))
        except ValueError as e:
            raise ResolverError("Invalid resolver response", str(e)) from e
        if not isinstance(payload, dict):
            raise ResolverError("Invalid resolver response", f"expected object, got {type(payload).__name__}")
        if payload.get("error"):
            raise ResolverError(str(payload["error"]), str(payload.get("details") or ""))
        return payload

    def health(self) -> bool:
        try:
            payload = self._request_json("health")
        except ResolverError as e:
            logger.debug("Resolver health check failed: %s", e)
            return False
        return payload.get("status") == "ok"

    def get_info(self, locator: str) -> SourceInfo:
        source = canonical_source_url(locator)
        logger.info("Resolving info for %s", source)
        payload = self._request_json("info", url=source)
        author = payload.get("author")
        if isinstance(author, dict):
            uploader = author.get("name")
        else:
            uploader = author
        duration = safe_float(payload.get("duration") or 0.0, 0.0)
        return SourceInfo(
            title=str(payload.get("title") or "Unknown Title"),
            thumbnail_url=str(payload.get("thumbnail") or ""),
            duration_sec=max(0.0, duration),
            uploader_name=str(uploader or "Unknown Author"),
        )

    def stream_url(self, locator: str) -> str:
        return f"{self.base_url}/stream?url={quote(canonical_source_url(locator), safe='')}"

    def auth_status(self) -> AuthStatus:
        payload = self._request_json("auth/status")
        logged_in = bool(payload.get("logged_in"))
        return AuthStatus(logged_in=logged_in, name=str(payload.get("name") or "") if logged_in else "")

    def start_auth_flow(self) -> AuthFlow:
        payload = self._request_json("auth/login", method="POST")
        verification_url: Optional[str] = payload.get("verification_url")
        user_code: Optional[str] = payload.get("user_code")
        if not verification_url or not user_code:
            raise ResolverError("Failed to start auth flow", "missing verification_url or user_code")
        return AuthFlow(verification_url=str(verification_url), user_code=str(user_code))

    def logout(self) -> bool:
        return bool(self._request_json("auth/logout", method="POST").get("success"))


def _decode_error_body(e: HTTPError) -> dict:
    try:
        payload = json.loads(e.read().decode("utf-8"))
    except (ValueError, OSError):
        return {}
    return payload if isinstance(payload, dict) else {}
