"""
Evidence Collaborators

HTTP clients for the external services the evidence pipeline depends on:
page capture (+ Wayback archival), OpenTimestamps notarization, AI content
comparison, and the CRM event sink.

Every call has a bounded timeout. Failures raise BestEffortError; the
pipeline decides how to degrade.
"""
import base64
import logging
from hashlib import sha256
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ... import config
from ...models.db_models import TimestampStatus, utcnow
from ...models.evidence import PageCapture, TimestampProof
from ..errors import BestEffortError

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 50000
MAX_LINKS = 500

BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.5',
}

# OpenTimestamps Bitcoin block header attestation tag
BITCOIN_ATTESTATION_TAG = bytes.fromhex("0588960d73d71901")


def build_session(retries: int = 1) -> requests.Session:
    """Session with a retry adapter for network transients."""
    retry = Retry(total=retries, allowed_methods=["GET", "POST"], backoff_factor=1, status_forcelist=[502, 503, 504])
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retry))
    session.mount("http://", HTTPAdapter(max_retries=retry))
    return session


# =============================================================================
# INTERFACES
# =============================================================================

class PageCapturer(Protocol):
    def capture(self, url: str) -> PageCapture:
        ...


class Notarizer(Protocol):
    def notarize(self, content_hash: str) -> TimestampProof:
        ...

    def check(self, proof: Dict[str, Any]) -> str:
        ...


class ContentComparer(Protocol):
    def compare(self, original_text: str, captured_text: str) -> List[Dict[str, Any]]:
        ...


class EventSink(Protocol):
    def track(self, event: str, data: Dict[str, Any]) -> None:
        ...


# =============================================================================
# PAGE CAPTURE
# =============================================================================

class PageCaptureClient:
    """Fetches the live page, extracts text and links, and asks Wayback to archive it."""

    def __init__(
        self,
        timeout: float = config.EXTERNAL_TIMEOUT_SECONDS,
        wayback_enabled: bool = config.WAYBACK_ENABLED,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.wayback_enabled = wayback_enabled
        self.session = session or build_session()

    def capture(self, url: str) -> PageCapture:
        captured_at = utcnow()
        try:
            response = self.session.get(url, timeout=self.timeout, headers=BROWSER_HEADERS)
            response.raise_for_status()
        except requests.RequestException as e:
            raise BestEffortError("page_capture", f"fetch failed for {url}: {e}") from e

        raw_html = response.text
        html_hash = sha256(raw_html.encode("utf-8")).hexdigest()
        title, text, links = self.extract(raw_html, url)
        logger.info(f"Captured {len(raw_html)} bytes from {url}: {len(text)} chars text, {len(links)} links")

        return PageCapture(
            html_hash=html_hash,
            text=text,
            links=links,
            title=title,
            archive_url=self.archive(url) if self.wayback_enabled else None,
            captured_at=captured_at,
        )

    @staticmethod
    def extract(raw_html: str, base_url: str):
        """Return (title, visible text, absolute outbound links)."""
        soup = BeautifulSoup(raw_html, 'html.parser')
        for tag in soup(['script', 'style', 'noscript', 'iframe', 'svg']):
            tag.decompose()

        title = soup.title.get_text(strip=True) if soup.title else None
        if not title:
            og_title = soup.find('meta', attrs={'property': 'og:title'})
            title = og_title.get('content', '').strip() if og_title else None

        body = soup.body or soup
        text = " ".join(body.get_text(separator=" ").split())[:MAX_TEXT_CHARS]

        links = []
        for anchor in soup.find_all('a', href=True):
            href = anchor['href'].strip()
            if not href or href.startswith(('#', 'javascript:', 'mailto:')):
                continue
            links.append(urljoin(base_url, href))
            if len(links) >= MAX_LINKS:
                break

        return title or None, text, links

    def archive(self, url: str) -> Optional[str]:
        """Submit to the Wayback Machine. The redirect location is the archive URL."""
        try:
            response = self.session.get(
                f"https://web.archive.org/save/{url}",
                timeout=self.timeout,
                headers={'User-Agent': 'ProductGuard Evidence Archiver'},
                allow_redirects=False,
            )
        except requests.RequestException as e:
            logger.warning(f"Wayback archival failed for {url}: {e}")
            return None

        location = response.headers.get('location') or response.headers.get('content-location')
        if not location:
            return None
        return urljoin("https://web.archive.org", location)


# =============================================================================
# NOTARIZATION
# =============================================================================

class OpenTimestampsClient:
    """Submits content hashes to an OpenTimestamps calendar."""

    def __init__(
        self,
        calendar_url: str = config.OTS_CALENDAR_URL,
        timeout: float = config.EXTERNAL_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.calendar_url = calendar_url.rstrip("/")
        self.timeout = timeout
        self.session = session or build_session()

    def notarize(self, content_hash: str) -> TimestampProof:
        try:
            digest = bytes.fromhex(content_hash)
        except ValueError as e:
            raise BestEffortError("notarization", f"content hash is not hex: {content_hash}") from e

        try:
            response = self.session.post(
                f"{self.calendar_url}/digest",
                data=digest,
                timeout=self.timeout,
                headers={'Accept': 'application/vnd.opentimestamps.v1', 'User-Agent': 'ProductGuard'},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise BestEffortError("notarization", f"calendar submit failed: {e}") from e

        proof = base64.b64encode(response.content).decode("ascii")
        return TimestampProof(
            status=TimestampStatus.PENDING.value,
            proof=proof,
            content_hash=content_hash,
            created_at=utcnow(),
            verification_url="https://opentimestamps.org/",
            calendar_url=self.calendar_url,
        )

    def check(self, proof: Dict[str, Any]) -> str:
        """
        Ask the calendar whether the timestamp has a Bitcoin attestation yet.

        Returns pending | confirmed. A 404 from the calendar means not yet upgraded.
        """
        content_hash = proof.get("hash")
        calendar_url = (proof.get("calendar_url") or self.calendar_url).rstrip("/")
        if not content_hash:
            raise BestEffortError("notarization", "stored proof has no hash")

        try:
            response = self.session.get(
                f"{calendar_url}/timestamp/{content_hash}",
                timeout=self.timeout,
                headers={'Accept': 'application/vnd.opentimestamps.v1'},
            )
        except requests.RequestException as e:
            raise BestEffortError("notarization", f"calendar check failed: {e}") from e

        if response.status_code == 404:
            return TimestampStatus.PENDING.value
        if response.status_code >= 400:
            raise BestEffortError("notarization", f"calendar returned HTTP {response.status_code}")

        if BITCOIN_ATTESTATION_TAG in response.content:
            return TimestampStatus.CONFIRMED.value
        return TimestampStatus.PENDING.value


# =============================================================================
# AI CONTENT COMPARISON
# =============================================================================

class ContentMatch(BaseModel):
    """One original-vs-infringing match returned by the comparison service."""
    type: str
    original: str
    infringing: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    legal_significance: Optional[str] = None
    explanation: Optional[str] = None


class ContentComparisonClient:
    """Posts original and captured text to the comparison service."""

    def __init__(
        self,
        url: Optional[str] = config.AI_ANALYSIS_URL,
        api_key: Optional[str] = config.AI_ANALYSIS_API_KEY,
        timeout: float = config.EXTERNAL_TIMEOUT_SECONDS * 4,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or build_session(retries=0)

    def compare(self, original_text: str, captured_text: str) -> List[Dict[str, Any]]:
        if not self.url:
            raise BestEffortError("ai_analysis", "AI_ANALYSIS_URL is not configured")

        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"

        try:
            response = self.session.post(
                self.url,
                json={"original_text": original_text, "captured_text": captured_text},
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise BestEffortError("ai_analysis", f"comparison request failed: {e}") from e

        raw_matches = body.get("matches", []) if isinstance(body, dict) else body
        try:
            return [ContentMatch.model_validate(m).model_dump() for m in raw_matches]
        except (PydanticValidationError, TypeError) as e:
            raise BestEffortError("ai_analysis", f"malformed comparison response: {e}") from e


# =============================================================================
# CRM / NOTIFICATION
# =============================================================================

class CrmClient:
    """Fire-and-forget event sink. Callers swallow its failures."""

    def __init__(
        self,
        webhook_url: Optional[str] = config.CRM_WEBHOOK_URL,
        timeout: float = config.EXTERNAL_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or build_session(retries=0)

    def track(self, event: str, data: Dict[str, Any]) -> None:
        if not self.webhook_url:
            logger.debug(f"CRM webhook not configured; dropping {event}")
            return
        try:
            response = self.session.post(
                self.webhook_url,
                json={"event": event, "data": data},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise BestEffortError("crm", f"{event} delivery failed: {e}") from e
