"""Product card discovery and parsing for category pages."""

import hashlib
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional
from urllib.parse import urldefrag

from selectolax.parser import HTMLParser, Node

from shopcrawl.config import settings
from shopcrawl.ingest.category_extractor import absolute_url

logger = logging.getLogger(__name__)

# "1.299,50 €", "412,90 €"
DECIMAL_PRICE_RE = re.compile(r"(\d{1,3}(?:\.\d{3})+|\d+),(\d{2})\s*(?:€|EUR)")
# "od 1.200 €"
INTEGER_PRICE_RE = re.compile(r"(\d{1,3}(?:\.\d{3})+|\d+)\s*(?:€|EUR)")
BACKGROUND_IMAGE_RE = re.compile(r"background-image\s*:\s*url\(\s*['\"]?([^'\")]+)['\"]?\s*\)", re.I)

ZERO_PRICE = Decimal("0.00")
CENTS = Decimal("0.01")

# Block-level containers a product card can live in
CONTAINER_TAGS = ("li", "article", "div")
MAX_ANCESTOR_STEPS = 6


@dataclass
class ProductData:
    """One product parsed from a category page card."""

    external_id: str
    name: str
    price: Decimal
    currency: str
    product_url: str
    brand: Optional[str] = None
    image_url: Optional[str] = None


def normalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Canonical absolute form of a product URL (fragment dropped)."""
    return urldefrag(absolute_url(url, base_url)).url


def make_external_id(url: str, base_url: Optional[str] = None) -> str:
    """Stable identifier: SHA-256 hex digest of the canonical product URL."""
    return hashlib.sha256(normalize_url(url, base_url).encode("utf-8")).hexdigest()


def parse_price(text: str) -> Decimal:
    """
    Parse a locale formatted price ('.' thousands, ',' decimals).

    Returns 0.00 when no price can be found.
    """
    if not text:
        return ZERO_PRICE

    match = DECIMAL_PRICE_RE.search(text)
    if match:
        whole = match.group(1).replace(".", "")
        return Decimal(f"{whole}.{match.group(2)}").quantize(CENTS)

    match = INTEGER_PRICE_RE.search(text)
    if match:
        return Decimal(match.group(1).replace(".", "")).quantize(CENTS)

    return ZERO_PRICE


def _first_srcset_candidate(srcset: Optional[str]) -> Optional[str]:
    if not srcset:
        return None
    first = srcset.split(",")[0].strip()
    return first.split()[0] if first else None


class ProductExtractor:
    """Finds product cards in a page and turns them into ProductData."""

    def __init__(
        self,
        container_selectors: Optional[Iterable[str]] = None,
        cta_phrases: Optional[Iterable[str]] = None,
        known_brands: Optional[Iterable[str]] = None,
        brand_attribute: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        self.container_selectors = list(
            container_selectors
            if container_selectors is not None
            else settings.product_container_selectors
        )
        self.cta_phrases = [
            p.lower() for p in (cta_phrases if cta_phrases is not None else settings.cta_phrases)
        ]
        self.known_brands = list(known_brands if known_brands is not None else settings.known_brands)
        self.brand_attribute = brand_attribute or settings.brand_attribute
        self.base_url = base_url or settings.base_url
        self.currency = currency or settings.default_currency

        self._brand_re: Optional[re.Pattern] = None
        if self.known_brands:
            alternatives = "|".join(
                re.escape(b) for b in sorted(self.known_brands, key=len, reverse=True)
            )
            self._brand_re = re.compile(rf"\b({alternatives})\b", re.I)

    # ------------------------------------------------------------------
    # Node discovery
    # ------------------------------------------------------------------

    def is_cta_text(self, text: str) -> bool:
        lowered = " ".join(text.lower().split())
        return any(phrase in lowered for phrase in self.cta_phrases)

    def find_product_nodes(self, html: str) -> list[Node]:
        """
        Locate product card nodes.

        Tries the known container selectors first; when none match, walks up
        from call-to-action links to the nearest block-level ancestor.
        """
        if not html or not html.strip():
            return []

        parser = HTMLParser(html)

        for selector in self.container_selectors:
            nodes = parser.css(selector)
            if nodes:
                logger.debug(f"Matched {len(nodes)} product nodes with {selector!r}")
                return nodes

        return self._find_nodes_from_cta(parser)

    def _find_nodes_from_cta(self, parser: HTMLParser) -> list[Node]:
        containers: dict[int, Node] = {}

        for anchor in parser.css("a"):
            if not self.is_cta_text(anchor.text(deep=True, separator=" ")):
                continue
            container = self._container_for(anchor)
            if container is not None:
                containers.setdefault(container.mem_id, container)

        if containers:
            logger.debug(f"Found {len(containers)} product nodes via call-to-action fallback")
        return list(containers.values())

    def _container_for(self, anchor: Node) -> Optional[Node]:
        """Nearest block ancestor holding a product link, else the nearest block ancestor."""
        nearest_block = None
        node = anchor
        for _ in range(MAX_ANCESTOR_STEPS):
            node = node.parent
            if node is None:
                break
            if node.tag not in CONTAINER_TAGS:
                continue
            if nearest_block is None:
                nearest_block = node
            if self._has_product_link(node):
                return node
        return nearest_block

    def _has_product_link(self, node: Node) -> bool:
        for anchor in node.css("a"):
            text = anchor.text(deep=True, separator=" ").strip()
            if text and not self.is_cta_text(text):
                return True
        return False

    # ------------------------------------------------------------------
    # Item parsing
    # ------------------------------------------------------------------

    def parse_item(self, node: Node) -> Optional[ProductData]:
        """
        Parse one product card.

        Returns None for decorative nodes without a product name and link.
        """
        anchors = node.css("a")
        name = self._first_link_text(anchors)
        href = self._first_link_href(anchors)
        if name is None or href is None:
            return None

        product_url = normalize_url(href, self.base_url)

        return ProductData(
            external_id=make_external_id(product_url, self.base_url),
            name=name,
            price=parse_price(node.text(deep=True, separator=" ")),
            currency=self.currency,
            product_url=product_url,
            brand=self.extract_brand(node, name),
            image_url=self.extract_image_url(node),
        )

    def parse_items(self, nodes: Iterable[Node]) -> list[ProductData]:
        """Parse many nodes, silently dropping the ones that are not products."""
        items = []
        for node in nodes:
            item = self.parse_item(node)
            if item is not None:
                items.append(item)
        return items

    def _first_link_text(self, anchors: list[Node]) -> Optional[str]:
        for anchor in anchors:
            text = " ".join(anchor.text(deep=True, separator=" ").split())
            if text and not self.is_cta_text(text):
                return text
        return None

    def _first_link_href(self, anchors: list[Node]) -> Optional[str]:
        for anchor in anchors:
            href = (anchor.attributes.get("href") or "").strip()
            if not href or href == "#" or href.startswith("javascript:"):
                continue
            if self.is_cta_text(anchor.text(deep=True, separator=" ")):
                continue
            return href
        return None

    def extract_brand(self, node: Node, name: str) -> Optional[str]:
        """Brand from the dedicated attribute, else a known brand mentioned in the name."""
        attr = self.brand_attribute
        value = node.attributes.get(attr)
        if not value:
            branded = node.css_first(f"[{attr}]")
            if branded is not None:
                value = branded.attributes.get(attr)
        if value and value.strip():
            return value.strip()

        if self._brand_re is None:
            return None
        match = self._brand_re.search(name)
        if not match:
            return None
        found = match.group(1).lower()
        for brand in self.known_brands:
            if brand.lower() == found:
                return brand
        return match.group(1)

    def extract_image_url(self, node: Node) -> Optional[str]:
        """First image candidate: <source srcset>, <img> attributes, then CSS background."""
        for source in node.css("source[srcset]"):
            candidate = _first_srcset_candidate(source.attributes.get("srcset"))
            if candidate:
                return absolute_url(candidate, self.base_url)

        for img in node.css("img"):
            attrs = img.attributes
            for candidate in (
                attrs.get("data-src"),
                attrs.get("data-original"),
                _first_srcset_candidate(attrs.get("srcset")),
                attrs.get("src"),
            ):
                if candidate and candidate.strip():
                    return absolute_url(candidate, self.base_url)

        styled = [node] + node.css("[style]")
        for element in styled:
            style = element.attributes.get("style") or ""
            match = BACKGROUND_IMAGE_RE.search(style)
            if match:
                return absolute_url(match.group(1).strip(), self.base_url)

        return None
