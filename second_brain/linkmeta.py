import html
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from second_brain.config import settings

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_DESCRIPTION_RE = re.compile(
    r"""<meta[^>]*name=["']description["'][^>]*content=["']([^"']*)["'][^>]*>""", re.IGNORECASE
)
_ICON_RE = re.compile(
    r"""<link[^>]*rel=["'](?:shortcut )?icon["'][^>]*href=["']([^"']*)["'][^>]*>""", re.IGNORECASE
)
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class LinkMetadata:
    title: str | None = None
    description: str | None = None
    favicon: str | None = None


def extract_metadata(page: str, url: str) -> LinkMetadata:
    title = None
    match = _TITLE_RE.search(page)
    if match:
        title = html.unescape(_TAG_RE.sub("", match.group(1))).strip() or None

    description = None
    match = _DESCRIPTION_RE.search(page)
    if match:
        description = html.unescape(match.group(1))

    parts = urlsplit(url)
    base_url = f"{parts.scheme}://{parts.netloc}"
    match = _ICON_RE.search(page)
    if match:
        favicon = match.group(1)
        if not urlsplit(favicon).scheme:
            favicon = f"{base_url}/{favicon.lstrip('/')}"
    else:
        favicon = f"{base_url}/favicon.ico"
    return LinkMetadata(title=title, description=description, favicon=favicon)


def fetch_url_metadata(url: str, client: httpx.Client | None = None) -> LinkMetadata:
    """Scrape title, description and favicon from a page. Any failure yields empty metadata."""
    try:
        if client is None:
            with httpx.Client(timeout=settings.link_metadata_timeout_seconds, follow_redirects=True) as own:
                response = own.get(url)
        else:
            response = client.get(url)
        return extract_metadata(response.text, url)
    except (httpx.HTTPError, ValueError):
        return LinkMetadata()
