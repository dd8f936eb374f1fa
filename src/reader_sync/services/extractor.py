# ABOUTME: Optional full-content extraction for newly stored articles.
# ABOUTME: Downloads the article page and keeps sanitized readability HTML.

from urllib.parse import urlsplit

import httpx
import structlog
from bs4 import BeautifulSoup
from readability import Document

from reader_sync.config import Settings, get_settings

log = structlog.get_logger()

ALLOWED_TAGS = {
    "p", "br", "strong", "em", "b", "i", "a", "ul", "ol", "li", "blockquote",
    "h1", "h2", "h3", "h4", "pre", "code", "img", "figure", "figcaption",
    "table", "thead", "tbody", "tr", "th", "td",
}
ALLOWED_ATTRS = {"a": {"href"}, "img": {"src", "alt"}}
URL_ATTRS = {"href", "src"}
# Removed with their contents rather than unwrapped
DROPPED_TAGS = ["script", "style", "noscript", "iframe", "object", "embed", "form", "template"]
SAFE_SCHEMES = {"", "http", "https", "mailto"}
MIN_TEXT_LENGTH = 50


def _safe_url(value: str) -> bool:
    return urlsplit(value.strip()).scheme.lower() in SAFE_SCHEMES


def sanitize_html(html_content: str) -> str:
    """Reduce article HTML to a small tag and attribute allow-list.

    Script-like elements go entirely. Other unknown tags are unwrapped so
    their text survives. Links and images keep only http(s), mailto and
    relative URLs.
    """
    soup = BeautifulSoup(html_content, "html.parser")
    while (dropped := soup.find(DROPPED_TAGS)) is not None:
        dropped.decompose()

    for tag in soup.find_all(lambda t: t.name not in ALLOWED_TAGS):
        tag.unwrap()

    for tag in soup.find_all(True):
        allowed = ALLOWED_ATTRS.get(tag.name, set())
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if name in allowed and (name not in URL_ATTRS or _safe_url(str(value)))
        }
    return str(soup).strip()


async def extract_content(url: str, settings: Settings | None = None) -> str | None:
    """Fetch a page and return its sanitized main content, or None on failure.

    Hits the article's own site, not the upstream API, so it costs no quota.
    """
    settings = settings or get_settings()
    try:
        async with httpx.AsyncClient(
            timeout=settings.extract_timeout,
            headers={"User-Agent": settings.extract_user_agent},
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()

        cleaned = sanitize_html(Document(response.text).summary())
        text = BeautifulSoup(cleaned, "html.parser").get_text().strip()
        if len(text) < MIN_TEXT_LENGTH:
            log.warning("extraction_too_short", url=url, length=len(text))
            return None

        log.info("content_extracted", url=url, length=len(cleaned))
        return cleaned

    except httpx.HTTPError as e:
        log.error("extraction_http_error", url=url, error=str(e))
        return None
    except Exception as e:
        log.error("extraction_error", url=url, error=str(e))
        return None
