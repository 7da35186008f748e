"""Default content extractor: trafilatura for the article body, BeautifulSoup
for the title and the outgoing links.

The orchestrator only sees the ``ContentExtractor`` protocol; this module is
one implementation of it. Extraction is CPU-bound and synchronous, so the
orchestrator runs it in a worker thread.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from urllib.parse import urldefrag, urljoin

import structlog
import trafilatura
from bs4 import BeautifulSoup

from fetchgate.models.cache import ExtractedLink

log = structlog.get_logger()

HTML_TYPES = frozenset({"text/html", "application/xhtml+xml"})
TEXT_TYPES = frozenset({"text/plain", "text/markdown"})
MAX_LINKS = 1000
_SKIPPED_LINK_SCHEMES = ("javascript:", "mailto:", "tel:", "data:")


class ExtractionError(Exception):
    """The body could not be turned into readable content."""


@dataclass(frozen=True)
class ExtractConfig:
    include_links: bool = True
    include_tables: bool = True
    favor_precision: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExtractionResult:
    title: str | None
    markdown: str | None
    text: str | None
    links: list[ExtractedLink] = field(default_factory=list)
    site_config_id: str | None = None


def media_type(content_type: str | None) -> str:
    """``'text/html; charset=utf-8'`` → ``'text/html'``."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def charset_of(content_type: str | None, default: str = "utf-8") -> str:
    if content_type:
        for param in content_type.split(";")[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "charset" and value.strip():
                return value.strip().strip('"').lower()
    return default


def decode_body(body: bytes, content_type: str | None) -> str:
    try:
        return body.decode(charset_of(content_type), errors="replace")
    except LookupError:
        # Unknown charset label
        return body.decode("utf-8", errors="replace")


def _looks_like_html(text: str) -> bool:
    head = text.lstrip()[:512].lower()
    return head.startswith("<!doctype html") or "<html" in head


class TrafilaturaExtractor:
    """HTML → Markdown/text via trafilatura, with BeautifulSoup metadata."""

    name = "trafilatura"

    def __init__(self) -> None:
        self.version = getattr(trafilatura, "__version__", "unknown")

    def extract(
        self,
        body: bytes,
        content_type: str | None,
        config: ExtractConfig,
        *,
        base_url: str | None = None,
    ) -> ExtractionResult:
        kind = media_type(content_type)
        document = decode_body(body, content_type)

        if kind in TEXT_TYPES:
            stripped = document.strip()
            if not stripped:
                raise ExtractionError("empty text body")
            return ExtractionResult(title=None, markdown=stripped, text=stripped)

        if kind not in HTML_TYPES and not (kind == "" and _looks_like_html(document)):
            raise ExtractionError(f"unsupported content type: {content_type or 'unknown'}")

        return self._extract_html(document, config, base_url)

    def _extract_html(
        self, html: str, config: ExtractConfig, base_url: str | None
    ) -> ExtractionResult:
        if not html.strip():
            raise ExtractionError("empty HTML document")

        try:
            markdown = trafilatura.extract(
                html,
                url=base_url,
                output_format="markdown",
                include_links=config.include_links,
                include_tables=config.include_tables,
                favor_precision=config.favor_precision,
            )
            text = trafilatura.extract(
                html,
                url=base_url,
                output_format="txt",
                include_links=False,
                include_tables=config.include_tables,
                favor_precision=config.favor_precision,
            )
        except Exception as exc:
            raise ExtractionError(f"trafilatura failed: {exc}") from exc

        soup = BeautifulSoup(html, "html.parser")
        title = _title_of(soup)
        links = _links_of(soup, base_url) if config.include_links else []

        if not markdown and not text:
            # No main-content block found; fall back to the visible page text.
            for tag in soup(["script", "style", "noscript", "template"]):
                tag.decompose()
            body = soup.body or soup
            fallback = "\n".join(
                line for line in body.get_text("\n", strip=True).splitlines() if line
            )
            if not fallback:
                raise ExtractionError("no readable content found")
            log.debug("extraction_fallback_text", url=base_url)
            markdown = text = fallback

        return ExtractionResult(
            title=title,
            markdown=(markdown or text or "").strip() or None,
            text=(text or markdown or "").strip() or None,
            links=links,
        )


def _title_of(soup: BeautifulSoup) -> str | None:
    if soup.title and soup.title.string and soup.title.string.strip():
        return soup.title.string.strip()
    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title and og_title.get("content"):
        return str(og_title["content"]).strip() or None
    h1 = soup.find("h1")
    if h1:
        return h1.get_text(" ", strip=True) or None
    return None


def _links_of(soup: BeautifulSoup, base_url: str | None) -> list[ExtractedLink]:
    links: list[ExtractedLink] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.startswith("#") or href.lower().startswith(_SKIPPED_LINK_SCHEMES):
            continue
        absolute = urldefrag(urljoin(base_url, href) if base_url else href)[0]
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(ExtractedLink(text=anchor.get_text(" ", strip=True), href=absolute))
        if len(links) >= MAX_LINKS:
            break
    return links
