"""
Structured product data (schema.org JSON-LD)

Parses <script type="application/ld+json"> blocks tolerantly and keeps only the
handful of fields the image pipeline uses. Anything unrecognized is discarded.
"""

import json
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

IMAGE_STRING_RE = re.compile(r"^data:image/|\.(jpe?g|png|webp|avif)(\?|#|$)", re.I)


@dataclass(frozen=True)
class StructuredProduct:
    """Typed view of a schema.org Product node"""
    name: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    url: Optional[str] = None
    images: List[str] = field(default_factory=list)
    price: Optional[float] = None
    currency: Optional[str] = None


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    return v if isinstance(v, list) else [v]


def _is_product(obj: Any) -> bool:
    if not isinstance(obj, dict):
        return False
    t = obj.get("@type")
    if isinstance(t, str):
        return t.lower() == "product"
    if isinstance(t, list):
        return any(str(s).lower() == "product" for s in t)
    return False


def find_product_node(node: Any) -> Optional[Dict[str, Any]]:
    """Depth-first search for the first Product node (checks @graph before other keys)."""
    if _is_product(node):
        return node
    if isinstance(node, dict):
        for item in _as_list(node.get("@graph")):
            if _is_product(item):
                return item
        for value in node.values():
            found = find_product_node(value)
            if found:
                return found
    elif isinstance(node, list):
        for item in node:
            found = find_product_node(item)
            if found:
                return found
    return None


def collect_image_strings(node: Any) -> List[str]:
    """Recursively collect any image-looking URL strings from a JSON value."""
    out: List[str] = []

    def visit(v: Any) -> None:
        if isinstance(v, str):
            if IMAGE_STRING_RE.search(v):
                out.append(v)
        elif isinstance(v, list):
            for x in v:
                visit(x)
        elif isinstance(v, dict):
            for x in v.values():
                visit(x)

    visit(node)
    return out


def parse_price(value: Any) -> Optional[float]:
    """Parse numbers like 19.99, "1.299,00", "$ 45" into a float."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    normalized = re.sub(r"[^\d,.\-]", "", value)
    # decimal comma: "1.299,00" -> "1299.00"
    if re.search(r",\d{2}$", normalized):
        normalized = normalized.replace(".", "")
        normalized = re.sub(r",(\d{2})$", r".\1", normalized)
    normalized = normalized.replace(",", "")
    try:
        return float(normalized)
    except ValueError:
        return None


def _image_field_urls(value: Any) -> List[str]:
    urls: List[str] = []
    for item in _as_list(value):
        if isinstance(item, str) and item:
            urls.append(item)
        elif isinstance(item, dict):
            u = item.get("url") or item.get("contentUrl")
            if isinstance(u, str) and u:
                urls.append(u)
    return urls


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def product_from_node(node: Dict[str, Any]) -> StructuredProduct:
    brand_val = node.get("brand")
    brand = _text(brand_val.get("name")) if isinstance(brand_val, dict) else _text(brand_val)

    price: Optional[float] = None
    currency: Optional[str] = None
    offers = [o for o in _as_list(node.get("offers")) if isinstance(o, dict)]
    if offers:
        offer = offers[0]
        price_spec = offer.get("priceSpecification")
        price_spec = price_spec if isinstance(price_spec, dict) else {}
        price = parse_price(offer.get("price"))
        if price is None:
            price = parse_price(price_spec.get("price"))
        currency = (
            _text(offer.get("priceCurrency"))
            or _text(price_spec.get("priceCurrency"))
            or _text(offer.get("priceCurrencyCode"))
        )

    images = list(dict.fromkeys(_image_field_urls(node.get("image")) + collect_image_strings(node)))

    return StructuredProduct(
        name=_text(node.get("name")) or _text(node.get("title")),
        description=_text(node.get("description")) or _text(node.get("descriptionShort")),
        brand=brand,
        url=_text(node.get("url")),
        images=images,
        price=price,
        currency=currency,
    )


def extract_structured_products(soup: BeautifulSoup) -> List[StructuredProduct]:
    """One StructuredProduct per JSON-LD block that contains a Product node."""
    products: List[StructuredProduct] = []
    for script in soup.find_all("script", {"type": "application/ld+json"}):
        raw = script.string or script.get_text() or ""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Skipping unparsable JSON-LD block")
            continue
        node = find_product_node(data)
        if node:
            products.append(product_from_node(node))
    return products


def extract_primary_product(soup: BeautifulSoup) -> Optional[StructuredProduct]:
    products = extract_structured_products(soup)
    return products[0] if products else None
