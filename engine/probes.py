from __future__ import annotations
import random
import string
import time
from io import BytesIO
from typing import Callable, Sequence

import requests
from PIL import Image, UnidentifiedImageError

from config.loader import ConfigStore
from logging_.engine_logger import get_engine_logger
from schemas.models import CheckStatus, ProbeKind, ProbeOutcome
from .cancel import CancelToken

log = get_engine_logger()

# favicons are small; anything bigger is only sniffed, not fully verified
MAX_ICON_BYTES = 2 * 1024 * 1024

ProbeStrategy = Callable[[str, int, CancelToken], ProbeOutcome]

_B36 = string.digits + string.ascii_lowercase


def cache_bust_params() -> dict[str, str]:
    """Query params that make every attempt a fresh request (timestamp + random)."""
    rnd = "".join(random.choice(_B36) for _ in range(10))
    return {"_": str(int(time.time() * 1000)), "r": rnd}


def _request_headers() -> dict[str, str]:
    cfg = ConfigStore.get()
    return {
        "User-Agent": cfg.http_client.user_agent,
        "Accept": cfg.http_client.accept,
        "Accept-Language": cfg.http_client.accept_language,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }


def _is_timeout(exc: Exception) -> bool:
    # requests заворачивает ReadTimeout при чтении тела в ConnectionError
    if isinstance(exc, requests.exceptions.Timeout):
        return True
    s = str(exc).lower()
    return "timed out" in s or "timeout" in s


class _DeadlineExceeded(Exception):
    pass


class _Attempt:
    """Settles exactly once; later settle() calls return the first outcome."""

    def __init__(self, kind: ProbeKind, timeout_ms: int, token: CancelToken | None):
        self.kind = kind
        self.token = token
        self.started = time.monotonic()
        self.deadline = self.started + timeout_ms / 1000
        self._outcome: ProbeOutcome | None = None

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def settle(self, status: CheckStatus) -> ProbeOutcome:
        if self._outcome is None:
            latency = int(round((time.monotonic() - self.started) * 1000))
            if self.token is not None and self.token.is_cancelled():
                latency = None
            self._outcome = ProbeOutcome(kind=self.kind, status=status, latency_ms=latency)
        return self._outcome


def _read_body(resp: requests.Response, attempt: _Attempt, limit: int) -> tuple[bytes, bool]:
    """Reads up to `limit` bytes. Returns (body, complete)."""
    buf = bytearray()
    for chunk in resp.iter_content(chunk_size=16384):
        if attempt.expired():
            raise _DeadlineExceeded()
        buf.extend(chunk)
        if len(buf) > limit:
            return bytes(buf[:limit]), False
    return bytes(buf), True


def looks_like_image(body: bytes, content_type: str = "", complete: bool = True) -> bool:
    """True if the body decodes as an image, the way an <img> element would accept it."""
    if not body:
        return False
    if "svg" in content_type.lower():
        head = body[:2048].lstrip().lower()
        return head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head)
    try:
        with Image.open(BytesIO(body)) as img:
            if complete:
                img.verify()
        return True
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError):
        return False


class ImageProbe:
    """
    Loads an icon resource and succeeds only if a real image comes back.

    Block pages, 404 pages and any other non-image body settle as fail, so
    an HTML stub served by a filtering middlebox never counts as reachable.
    """

    def __init__(self, kind: ProbeKind, path: str, max_bytes: int = MAX_ICON_BYTES):
        self.kind = kind
        self.path = path
        self.max_bytes = max_bytes

    def url(self, domain: str) -> str:
        return f"https://{domain}{self.path}"

    def __call__(self, domain: str, timeout_ms: int, token: CancelToken | None = None) -> ProbeOutcome:
        attempt = _Attempt(self.kind, timeout_ms, token)
        url = self.url(domain)
        try:
            resp = requests.get(
                url,
                params=cache_bust_params(),
                headers=_request_headers(),
                timeout=timeout_ms / 1000,
                stream=True,
                allow_redirects=True,
            )
        except requests.exceptions.RequestException as e:
            log.debug(f"{self.kind.value} probe for {domain} failed: {e}")
            return attempt.settle(CheckStatus.TIMEOUT if _is_timeout(e) else CheckStatus.FAIL)
        except Exception as e:
            log.error(f"Unexpected error in {self.kind.value} probe for {domain}: {e}", exc_info=True)
            return attempt.settle(CheckStatus.FAIL)

        try:
            if not resp.ok:
                log.debug(f"{self.kind.value} probe for {domain}: HTTP {resp.status_code}")
                return attempt.settle(CheckStatus.FAIL)
            try:
                body, complete = _read_body(resp, attempt, self.max_bytes)
            except _DeadlineExceeded:
                return attempt.settle(CheckStatus.TIMEOUT)
            except requests.exceptions.RequestException as e:
                return attempt.settle(CheckStatus.TIMEOUT if _is_timeout(e) else CheckStatus.FAIL)

            if attempt.expired():
                return attempt.settle(CheckStatus.TIMEOUT)
            content_type = resp.headers.get("Content-Type", "")
            if looks_like_image(body, content_type, complete):
                return attempt.settle(CheckStatus.OK)
            log.debug(f"{self.kind.value} probe for {domain}: body is not an image ({content_type or 'no content-type'})")
            return attempt.settle(CheckStatus.FAIL)
        finally:
            resp.close()


class RequestProbe:
    """
    Plain HEAD/GET against the site root. Any HTTP response counts as ok;
    only transport errors fail. Weaker signal than the icon probes.
    """

    def __init__(self, kind: ProbeKind, method: str):
        self.kind = kind
        self.method = method

    def url(self, domain: str) -> str:
        return f"https://{domain}/"

    def __call__(self, domain: str, timeout_ms: int, token: CancelToken | None = None) -> ProbeOutcome:
        attempt = _Attempt(self.kind, timeout_ms, token)
        try:
            resp = requests.request(
                self.method,
                self.url(domain),
                params=cache_bust_params(),
                headers=_request_headers(),
                timeout=timeout_ms / 1000,
                stream=True,
                allow_redirects=True,
            )
            resp.close()
        except requests.exceptions.RequestException as e:
            log.debug(f"{self.method} probe for {domain} failed: {e}")
            return attempt.settle(CheckStatus.TIMEOUT if _is_timeout(e) else CheckStatus.FAIL)
        except Exception as e:
            log.error(f"Unexpected error in {self.method} probe for {domain}: {e}", exc_info=True)
            return attempt.settle(CheckStatus.FAIL)

        if attempt.expired():
            return attempt.settle(CheckStatus.TIMEOUT)
        return attempt.settle(CheckStatus.OK)


DEFAULT_PROBES: Sequence[ProbeStrategy] = (
    ImageProbe(ProbeKind.ICON_PRIMARY, "/favicon.ico"),
    ImageProbe(ProbeKind.ICON_SECONDARY, "/apple-touch-icon.png"),
    ImageProbe(ProbeKind.ICON_TERTIARY, "/favicon.png"),
    RequestProbe(ProbeKind.HEAD, "HEAD"),
    RequestProbe(ProbeKind.GET, "GET"),
)
