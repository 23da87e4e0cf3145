"""Subcategory discovery from category page HTML."""

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urldefrag, urljoin

from selectolax.parser import HTMLParser

from shopcrawl.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubcategoryLink:
    """Discovered subcategory link."""

    name: str
    slug: str
    url: str


def slugify(text: str) -> str:
    """Lowercase ASCII slug with non-alphanumeric runs collapsed to '-'."""
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")


def absolute_url(href: str, base_url: Optional[str] = None) -> str:
    """Resolve a possibly relative href against the site origin."""
    href = href.strip()
    if href.startswith(("http://", "https://")):
        return href
    return urljoin((base_url or settings.base_url).rstrip("/") + "/", href)


class CategoryExtractor:
    """Extracts whitelisted subcategory links from a category page."""

    def __init__(
        self,
        path_fragments: Optional[Iterable[str]] = None,
        names: Optional[Iterable[str]] = None,
        base_url: Optional[str] = None,
    ):
        """
        Args:
            path_fragments: href fragments a link must contain (any of)
            names: Lowercase link texts to accept; empty accepts any text
            base_url: Site origin for relative links
        """
        self.path_fragments = list(
            path_fragments if path_fragments is not None else settings.subcategory_path_fragments
        )
        self.names = {
            n.lower() for n in (names if names is not None else settings.subcategory_names)
        }
        self.base_url = base_url or settings.base_url

    def _matches(self, name: str, href: str) -> bool:
        if not any(fragment in href for fragment in self.path_fragments):
            return False
        if self.names and name.lower() not in self.names:
            return False
        return True

    def extract_subcategories(self, html: str) -> list[SubcategoryLink]:
        """
        Parse subcategory links in document order, deduplicated by URL.

        Returns an empty list when nothing matches or the markup is unusable.
        """
        if not html or not html.strip():
            return []

        parser = HTMLParser(html)
        found: dict[str, SubcategoryLink] = {}

        for anchor in parser.css("a[href]"):
            name = " ".join(anchor.text(deep=True, separator=" ").split())
            href = (anchor.attributes.get("href") or "").strip()
            if not name or not href or href.startswith("#"):
                continue
            if not self._matches(name, href):
                continue

            url = urldefrag(absolute_url(href, self.base_url)).url
            if url in found:
                continue

            found[url] = SubcategoryLink(name=name, slug=slugify(name), url=url)

        logger.debug(f"Accepted {len(found)} subcategory links")
        return list(found.values())
