"""
AI text-enhancement API.

POST /enhance {text} rewrites raw OCR text with an LLM. Checks run in this
order: service configured (503), per-client rate limit (429), input (400),
minimum length (200, not enhanced), then the rewrite itself. A failed rewrite
still answers 200 with the original text so clients never lose OCR output.
"""

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Callable

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import RateLimited
from .llm import TextRewriter, create_provider

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10
REWRITE_TIMEOUT = 10.0


class SlidingWindowRateLimiter:
    """
    At most `max_requests` per client within any `window` seconds.

    Each client keeps the timestamps of its recent accepted requests; a request
    is accepted when fewer than `max_requests` of them fall inside the window.
    """

    def __init__(self,
                 max_requests: int = 10,
                 window: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window = window
        self.clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._next_sweep = 0.0

    def _expire(self, client_id: str, now: float) -> deque[float]:
        hits = self._hits.get(client_id)
        if hits is None:
            return deque()
        while hits and hits[0] <= now - self.window:
            hits.popleft()
        if not hits:
            del self._hits[client_id]
        return hits

    def _sweep(self, now: float) -> None:
        """Forget clients whose every request has left the window, once per window."""
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.window
        cutoff = now - self.window
        idle = [client_id for client_id, hits in self._hits.items() if hits[-1] <= cutoff]
        for client_id in idle:
            del self._hits[client_id]

    @property
    def tracked_clients(self) -> int:
        """Number of clients currently held in memory."""
        return len(self._hits)

    def check(self, client_id: str) -> int:
        """
        Record one request.

        Returns:
            Requests the client has left in the current window

        Raises:
            RateLimited: With the seconds until the oldest request expires
        """
        now = self.clock()
        self._sweep(now)
        hits = self._expire(client_id, now)

        if len(hits) >= self.max_requests:
            reset_after = max(1, math.ceil(hits[0] + self.window - now))
            raise RateLimited(reset_after)

        hits.append(now)
        self._hits[client_id] = hits
        return self.max_requests - len(hits)

    def reset(self, client_id: str | None = None) -> None:
        if client_id is None:
            self._hits.clear()
        else:
            self._hits.pop(client_id, None)


def client_identifier(request: Request) -> str:
    """client-ip header, else the socket peer, else "anonymous"."""
    header = request.headers.get("client-ip")
    if header:
        return header
    if request.client is not None and request.client.host:
        return request.client.host
    return "anonymous"


def rewriter_from_settings(settings: Settings) -> TextRewriter | None:
    """Build the configured rewriter, or None when no API key is available."""
    try:
        provider = create_provider(
            settings.llm_provider,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            timeout=REWRITE_TIMEOUT,
        )
    except ValueError as e:
        logger.warning("AI enhancement not configured: %s", e)
        return None
    return TextRewriter(provider)


def create_app(rewriter: TextRewriter | None = None,
               limiter: SlidingWindowRateLimiter | None = None,
               timeout: float = REWRITE_TIMEOUT) -> FastAPI:
    """
    Build the enhancement API.

    Args:
        rewriter: Text rewriter; None answers every request with 503
        limiter: Rate limiter (default: 10 requests per 60 s per client)
        timeout: Bound on one rewrite in seconds
    """
    limiter = limiter or SlidingWindowRateLimiter()

    app = FastAPI(
        title="DocScan Enhancement API",
        description="Cleans up raw OCR text with a language model",
        version="0.1.0",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.state.rewriter = rewriter
    app.state.limiter = limiter

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            headers={"Retry-After": str(exc.reset_after)},
            content={
                "error": "Rate limit exceeded",
                "resetAfter": exc.reset_after,
                "message": f"Please try again in {exc.reset_after} seconds",
            },
        )

    @app.post("/enhance")
    async def enhance(request: Request) -> JSONResponse:
        """Rewrite raw OCR text."""
        if app.state.rewriter is None:
            return JSONResponse(
                status_code=503,
                content={"error": "AI enhancement not configured. Please set an LLM API key."},
            )

        client_id = client_identifier(request)
        try:
            remaining = app.state.limiter.check(client_id)
        except RateLimited:
            logger.info("Rate limit exceeded for %s", client_id)
            raise

        try:
            body = await request.json()
        except ValueError:
            body = None
        text = body.get("text") if isinstance(body, dict) else None
        if not text or not isinstance(text, str):
            return JSONResponse(status_code=400, content={"error": "Invalid input: text is required"})

        if len(text.strip()) < MIN_TEXT_LENGTH:
            return JSONResponse(content={
                "text": text,
                "enhanced": False,
                "message": "Text too short for enhancement",
            })

        try:
            enhanced = await asyncio.wait_for(
                asyncio.to_thread(app.state.rewriter.rewrite, text),
                timeout=timeout,
            )
        except Exception as e:
            logger.error("AI enhancement failed: %s", e)
            return JSONResponse(content={
                "text": text,
                "enhanced": False,
                "error": "AI enhancement failed. Using original OCR text.",
            })

        return JSONResponse(
            headers={"X-RateLimit-Remaining": str(remaining)},
            content={"text": enhanced, "enhanced": True, "original": text},
        )

    @app.get("/")
    async def root() -> dict:
        """API root endpoint."""
        return {
            "name": "DocScan Enhancement API",
            "version": "0.1.0",
            "configured": app.state.rewriter is not None,
            "endpoints": {"enhance": "POST /enhance"},
        }

    return app


def run(settings: Settings | None = None) -> None:
    """Serve the API with uvicorn using the configured provider."""
    settings = settings or get_settings()
    app = create_app(
        rewriter=rewriter_from_settings(settings),
        limiter=SlidingWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window),
    )
    uvicorn.run(app, host=settings.server_host, port=settings.server_port, log_level=settings.log_level.lower())
