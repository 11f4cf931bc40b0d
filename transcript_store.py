"""
Sources of the authoritative transcript used to build a query.

The live fragments shown on the display can still be revised by the speech
recogniser, so the finalizer re-reads the transcript for the listening window
from a store before sending anything to the agent.
"""

import asyncio
import json
import logging
import math
import re
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

import requests

log = logging.getLogger("mira_voice")


class TranscriptFetchError(Exception):
    """The transcript could not be retrieved or was not JSON."""

    def __init__(self, message: str, endpoint: str = "", status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.endpoint = endpoint
        self.status = status
        self.body = body


class TranscriptFormatError(Exception):
    """The transcript payload did not contain a list of segments."""


def clean_server_url(raw_url: Optional[str]) -> str:
    """Turn a ``wss://host/tpa-ws`` session URL into the ``https://host`` API base"""
    if not raw_url:
        return ""
    url = re.sub(r"^wss?://", "", raw_url.strip())
    url = re.sub(r"^https?://", "", url)
    url = re.sub(r"/tpa-ws/?$", "", url)
    return f"https://{url.rstrip('/')}"


def combine_segments(payload: Any) -> str:
    """Join the text of every segment in a transcript payload"""
    if not isinstance(payload, dict):
        raise TranscriptFormatError(f"Expected a JSON object, got {type(payload).__name__}")
    segments = payload.get("segments")
    if not isinstance(segments, list):
        raise TranscriptFormatError("Response has no 'segments' list")

    texts = []
    for segment in segments:
        if not isinstance(segment, dict):
            raise TranscriptFormatError(f"Malformed segment: {segment!r}")
        text = segment.get("text")
        if text is None:
            continue
        if not isinstance(text, str):
            raise TranscriptFormatError(f"Segment text is not a string: {text!r}")
        texts.append(text)
    return " ".join(texts)


class HttpTranscriptStore:
    """Reads ``GET {server}/api/transcripts/{session}?duration={seconds}``"""

    def __init__(
        self,
        server_url: str,
        timeout: float = 10.0,
        http=None,
    ):
        if not server_url:
            raise ValueError("server_url is required")
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        # Fetches run on worker threads, each one is a standalone requests.get
        self.http = http or requests

    def endpoint(self, session_id: str, duration_seconds: int) -> str:
        return f"{self.server_url}/api/transcripts/{session_id}?duration={duration_seconds}"

    async def fetch(self, session_id: str, duration_seconds: int) -> Any:
        return await asyncio.to_thread(self._fetch_blocking, session_id, duration_seconds)

    def _fetch_blocking(self, session_id: str, duration_seconds: int) -> Any:
        url = self.endpoint(session_id, duration_seconds)
        log.info(f"[Session {session_id}]: Fetching transcript from: {url}")

        try:
            response = self.http.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TranscriptFetchError(f"Request failed: {e}", endpoint=url) from e

        body = response.text or ""
        log.info(f"[Session {session_id}]: Response status: {response.status_code}")
        log.debug(f"[Session {session_id}]: Raw response body: {body}")

        if not response.ok:
            raise TranscriptFetchError(
                f"HTTP {response.status_code}: {response.reason}",
                endpoint=url,
                status=response.status_code,
                body=body,
            )

        if not body.strip():
            raise TranscriptFetchError(
                "Empty response body received",
                endpoint=url,
                status=response.status_code,
                body=body,
            )

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise TranscriptFetchError(
                f"Failed to parse JSON response: {e}",
                endpoint=url,
                status=response.status_code,
                body=body,
            ) from e


class LocalTranscriptStore:
    """In-process rolling transcript, used when no transcript server is configured.

    Keeps the final fragments heard on each session with their arrival time
    and serves the same payload shape as the remote store.
    """

    def __init__(self, retention_seconds: float = 300.0, max_segments: int = 500):
        self.retention_seconds = retention_seconds
        self._segments: Dict[str, Deque[Tuple[float, str]]] = defaultdict(
            lambda: deque(maxlen=max_segments)
        )

    def record(self, session_id: str, text: str, timestamp: Optional[float] = None) -> None:
        text = (text or "").strip()
        if not text:
            return
        now = time.monotonic() if timestamp is None else timestamp
        segments = self._segments[session_id]
        segments.append((now, text))
        while segments and now - segments[0][0] > self.retention_seconds:
            segments.popleft()

    def forget(self, session_id: str) -> None:
        self._segments.pop(session_id, None)

    def recent(self, session_id: str, duration_seconds: float) -> List[Dict[str, Any]]:
        # Pad the window by a second, durations are rounded up to whole seconds
        cutoff = time.monotonic() - math.ceil(duration_seconds) - 1.0
        return [
            {"text": text, "timestamp": timestamp}
            for timestamp, text in self._segments.get(session_id, ())
            if timestamp >= cutoff
        ]

    async def fetch(self, session_id: str, duration_seconds: int) -> Any:
        return {"segments": self.recent(session_id, duration_seconds)}
