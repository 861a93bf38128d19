"""
Client for the remote AI text-enhancement endpoint.

TextEnhancer never raises and never loses OCR output: whenever the remote
call is skipped, declined or fails, the original text comes back unchanged
with wasEnhanced=False and a status explaining why.
"""

import asyncio
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
MIN_TEXT_LENGTH = 10


class EnhancementStatus(str, Enum):
    ENHANCED = "enhanced"
    TOO_SHORT = "too_short"
    OFFLINE = "offline"
    DISABLED = "disabled"
    UNCONFIGURED = "unconfigured"
    RATE_LIMITED = "rate_limited"
    DECLINED = "declined"
    FAILED = "failed"


STATUS_MESSAGES: dict[EnhancementStatus, str] = {
    EnhancementStatus.ENHANCED: "Text enhanced with AI",
    EnhancementStatus.TOO_SHORT: "Text too short for enhancement",
    EnhancementStatus.OFFLINE: "Offline mode - AI enhancement unavailable",
    EnhancementStatus.DISABLED: "AI enhancement disabled",
    EnhancementStatus.UNCONFIGURED: "AI enhancement not configured on the server",
    EnhancementStatus.RATE_LIMITED: "Rate limit exceeded",
    EnhancementStatus.DECLINED: "AI enhancement declined by the server",
    EnhancementStatus.FAILED: "AI enhancement unavailable",
}


@dataclass(frozen=True)
class EnhancementResult:
    text: str
    was_enhanced: bool
    original_text: str
    status: EnhancementStatus
    status_message: str
    retry_after: int | None = None

    @property
    def rate_limited(self) -> bool:
        return self.status is EnhancementStatus.RATE_LIMITED


def _fallback(text: str,
              status: EnhancementStatus,
              message: str | None = None,
              retry_after: int | None = None) -> EnhancementResult:
    return EnhancementResult(
        text=text,
        was_enhanced=False,
        original_text=text,
        status=status,
        status_message=message or STATUS_MESSAGES[status],
        retry_after=retry_after,
    )


def probe_online(url: str) -> bool:
    """
    Best-effort connectivity check: can the endpoint's host be resolved?

    Only name resolution is checked; the request's own connect timeout
    bounds how long an unreachable host can take.

    Args:
        url: Endpoint URL

    Returns:
        False when the host cannot be resolved
    """
    host = urlparse(url).hostname
    if not host or host in ("localhost", "127.0.0.1", "::1"):
        return True

    try:
        socket.getaddrinfo(host, None)
    except OSError:
        return False
    return True


class TextEnhancer:
    """
    Sends raw OCR text to the enhancement endpoint and returns cleaned text.

    The endpoint contract:
        POST {text} -> 200 {text, enhanced, original?}
                     | 400 missing text | 429 {resetAfter} | 503 not configured
    """

    def __init__(self,
                 endpoint: str,
                 enabled: bool = True,
                 timeout: float = DEFAULT_TIMEOUT,
                 min_length: int = MIN_TEXT_LENGTH,
                 session: requests.Session | None = None,
                 is_online: Callable[[], bool] | None = None):
        """
        Initialize the enhancer.

        Args:
            endpoint: Full URL of the POST /enhance endpoint
            enabled: Feature switch; disabled enhancers never call out
            timeout: Bound on the HTTP call in seconds (default: 10)
            min_length: Texts shorter than this are not sent
            session: requests session to use (default: a new one)
            is_online: Connectivity probe (default: DNS check of the endpoint host)
        """
        self.endpoint = endpoint
        self.enabled = enabled
        self.timeout = timeout
        self.min_length = min_length
        self.session = session or requests.Session()
        self.is_online = is_online or (lambda: probe_online(endpoint))

    def enhance(self, text: str) -> EnhancementResult:
        """
        Enhance text with the remote service, or explain why not.

        Args:
            text: Raw OCR text

        Returns:
            EnhancementResult; `text` is the original whenever was_enhanced is False
        """
        if not self.enabled:
            return _fallback(text, EnhancementStatus.DISABLED)

        if len(text.strip()) < self.min_length:
            return _fallback(text, EnhancementStatus.TOO_SHORT)

        if not self.is_online():
            return _fallback(text, EnhancementStatus.OFFLINE)

        try:
            response = self.session.post(
                self.endpoint,
                json={"text": text},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            logger.warning("AI enhancement timed out after %.0fs", self.timeout)
            return _fallback(text, EnhancementStatus.FAILED)
        except requests.RequestException as e:
            logger.warning("AI enhancement request failed: %s", e)
            return _fallback(text, EnhancementStatus.FAILED)

        return self._parse_response(text, response)

    def _parse_response(self, text: str, response: requests.Response) -> EnhancementResult:
        if response.status_code == 429:
            retry_after = self._retry_after(response)
            logger.info("AI enhancement rate limited, retry after %ss", retry_after)
            return _fallback(
                text,
                EnhancementStatus.RATE_LIMITED,
                f"Rate limit exceeded. Please try again in {retry_after} seconds",
                retry_after=retry_after,
            )

        if response.status_code == 503:
            return _fallback(text, EnhancementStatus.UNCONFIGURED)

        if not 200 <= response.status_code < 300:
            logger.warning("AI enhancement failed with HTTP %d", response.status_code)
            return _fallback(text, EnhancementStatus.FAILED)

        try:
            data = response.json()
        except ValueError:
            logger.warning("AI enhancement returned invalid JSON")
            return _fallback(text, EnhancementStatus.FAILED)

        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            logger.warning("AI enhancement returned an unexpected response shape")
            return _fallback(text, EnhancementStatus.FAILED)

        if data.get("enhanced") is not True:
            message = data.get("message") or data.get("error")
            return _fallback(text, EnhancementStatus.DECLINED, message if isinstance(message, str) else None)

        return EnhancementResult(
            text=data["text"],
            was_enhanced=True,
            original_text=text,
            status=EnhancementStatus.ENHANCED,
            status_message=STATUS_MESSAGES[EnhancementStatus.ENHANCED],
        )

    @staticmethod
    def _retry_after(response: requests.Response) -> int:
        """Seconds to wait, from the body's resetAfter or the Retry-After header."""
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("resetAfter") is not None:
                return max(1, int(data["resetAfter"]))
        except (ValueError, TypeError):
            logger.debug("No usable resetAfter in 429 body")
        header = response.headers.get("Retry-After")
        if header and header.isdigit():
            return max(1, int(header))
        return 60

    async def enhance_async(self, text: str) -> EnhancementResult:
        """enhance() off the event loop thread."""
        return await asyncio.to_thread(self.enhance, text)
