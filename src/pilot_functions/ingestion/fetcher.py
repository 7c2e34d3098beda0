"""Fetch a remote document and normalise it to plain text."""

from __future__ import annotations

import io
import json
import logging
import re
import unicodedata

import requests
import trafilatura
from bs4 import BeautifulSoup
from pypdf import PdfReader

from pilot_functions.config import settings
from pilot_functions.errors import FetchError, UnsupportedContentError

logger = logging.getLogger(__name__)

_BOILERPLATE_TAGS = ["script", "style", "nav", "header", "footer", "aside", "noscript", "iframe"]

PDF_NOT_SUPPORTED = (
    "PDF URL processing is not currently supported. "
    "Please upload the PDF file directly or use a different URL."
)


# ── helpers ──────────────────────────────────────────────────────────
def _normalise(text: str) -> str:
    """Unicode NFC, collapse whitespace, strip control chars."""
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", text)
    return text.strip()


def _extract_title(soup: BeautifulSoup) -> str:
    """Best-effort title from HTML."""
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(strip=True)
    return ""


def _strip_tags(soup: BeautifulSoup) -> str:
    for tag in soup(_BOILERPLATE_TAGS):
        tag.decompose()
    return _normalise(soup.get_text(separator="\n", strip=True))


def html_to_text(html: str, url: str | None = None) -> str:
    """Extract the main readable content of an HTML page.

    Uses trafilatura's main-content extraction and prefixes the page
    title as a Markdown heading.  When extraction fails or yields
    nothing, falls back to stripping boiler-plate tags with
    BeautifulSoup.
    """
    soup = BeautifulSoup(html, "html.parser")
    title = _extract_title(soup)

    try:
        extracted = trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=True,
            include_images=False,
            favor_recall=True,
        )
    except Exception:  # lxml errors on broken markup
        logger.warning("Main-content extraction failed for %s, using fallback", url, exc_info=True)
        extracted = None

    if extracted and extracted.strip():
        text = _normalise(extracted)
        logger.info("Extracted %d chars from %r", len(text), title or "Untitled")
        return f"# {title}\n\n{text}" if title else text

    logger.info("Main-content extraction found nothing for %s, using fallback", url)
    return _strip_tags(soup)


def extract_pdf_text(data: bytes) -> str:
    """Read the text layer of every page, joined by blank lines."""
    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return _normalise("\n\n".join(p for p in pages if p))


# ── main entry point ─────────────────────────────────────────────────
def fetch_url_content(
    url: str,
    *,
    session: requests.Session | None = None,
    allow_pdf: bool | None = None,
    timeout: int | None = None,
) -> str:
    """Download *url* and return its content as text.

    Parameters
    ----------
    url:
        Absolute http(s) URL.
    session:
        Optional ``requests.Session``; module-level ``requests`` is used
        otherwise.
    allow_pdf:
        Read PDFs through ``pypdf``.  Defaults to
        ``settings.pdf_parsing_enabled``.
    timeout:
        Per-request timeout in seconds.

    Returns
    -------
    str
        Pretty-printed JSON, main-content text for HTML, raw XML, or the
        body of any other ``text/*`` response.

    Raises
    ------
    FetchError
        Transport failure or non-2xx status.
    UnsupportedContentError
        PDF while PDF parsing is disabled, or a non-text content type.
    """
    allow_pdf = settings.pdf_parsing_enabled if allow_pdf is None else allow_pdf
    http = session or requests
    logger.info("Fetching URL content: %s", url)

    try:
        resp = http.get(
            url,
            headers={"User-Agent": settings.user_agent},
            timeout=timeout or settings.request_timeout,
        )
    except requests.RequestException as exc:
        raise FetchError(f"Error fetching URL: {exc}") from exc

    if not resp.ok:
        raise FetchError(f"Failed to fetch URL: {resp.status_code} {resp.reason}")

    content_type = resp.headers.get("content-type", "")
    logger.debug("Content-Type for %s: %s", url, content_type)

    if "application/pdf" in content_type or url.lower().endswith(".pdf"):
        if not allow_pdf:
            raise UnsupportedContentError(PDF_NOT_SUPPORTED)
        return extract_pdf_text(resp.content)

    if "application/json" in content_type:
        return json.dumps(resp.json(), indent=2)
    if "text/html" in content_type:
        return html_to_text(resp.text, url)
    if "text/xml" in content_type or "application/xml" in content_type:
        return resp.text
    if "text/" in content_type:
        return resp.text

    raise UnsupportedContentError(f"Unsupported content type: {content_type}")
