"""HTML to clean text conversion for crawled pages.

Boilerplate (scripts, navigation, cookie banners and so on) is removed before
the main content is extracted, and whitespace is normalised so that blank
lines separate paragraphs. The chunker relies on those paragraph breaks.
"""

import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import List, Optional

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

logger = logging.getLogger(__name__)

REMOVAL_SELECTORS = ",".join([
    "script",
    "style",
    "noscript",
    "svg",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "iframe",
    ".cookie-banner",
    ".cookie-banner__wrapper",
    '[id*="cookie"]',
    '[class*="cookie"]',
    '[id*="banner"]',
    '[class*="banner"]',
    '[role="navigation"]',
    '[aria-label="Breadcrumb"]',
])

# Never removed even when a banner/cookie selector matches them
PROTECTED_TAGS = {"html", "body", "main"}

BLOCK_TAGS = [
    "p", "div", "section", "article", "main", "li", "ul", "ol", "table", "tr",
    "h1", "h2", "h3", "h4", "h5", "h6", "pre", "blockquote", "dl", "dt", "dd",
]

MIN_MAIN_TEXT_CHARS = 200


@dataclass
class ParsedPage:
    """Cleaned representation of one fetched page."""
    url: str
    domain: str
    cleaned_text: str
    title: Optional[str] = None
    links: List[str] = field(default_factory=list)


def clean_text(raw_text: str) -> str:
    """Normalise whitespace while keeping paragraph breaks."""
    text = (raw_text or "").replace("\r\n", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def extract_links(soup: BeautifulSoup, base_url: str) -> List[str]:
    """Absolute http(s) links of the page, fragment removed, in document order."""
    seen = set()
    links = []
    for a in soup.select("a[href]"):
        href = (a.get("href") or "").strip()
        if not href or href.startswith(("mailto:", "javascript:", "tel:", "#")):
            continue
        absolute = urllib.parse.urljoin(base_url, href).split("#")[0]
        if not absolute.startswith(("http://", "https://")):
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


def _block_text(element) -> str:
    if element is None:
        return ""
    return element.get_text()


def parse_html_to_text(html: str, url: str, domain: str,
                       content_selector: Optional[str] = None) -> ParsedPage:
    """Parse ``html`` fetched from ``url`` into a :class:`ParsedPage`.

    ``content_selector`` names an element whose text is preferred over the
    main/article/body fallbacks when it is present and long enough.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    title = None
    if soup.title and soup.title.get_text(strip=True):
        title = soup.title.get_text(strip=True)

    links = extract_links(soup, url)

    for element in soup.select(REMOVAL_SELECTORS):
        if element.name in PROTECTED_TAGS or element.decomposed:
            continue
        element.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    main_text = ""
    if content_selector:
        try:
            main_text = _block_text(soup.select_one(content_selector))
        except SelectorSyntaxError as e:
            logger.warning(f"Invalid content selector {content_selector!r}: {e}")
    if len(main_text.strip()) < MIN_MAIN_TEXT_CHARS:
        main_text = _block_text(soup.find("main"))
    if len(main_text.strip()) < MIN_MAIN_TEXT_CHARS:
        main_text = _block_text(soup.find("article"))
    if len(main_text.strip()) < MIN_MAIN_TEXT_CHARS:
        body = soup.find("body")
        main_text = _block_text(body if body is not None else soup)

    return ParsedPage(
        url=url,
        domain=domain,
        cleaned_text=clean_text(main_text),
        title=title,
        links=links,
    )
