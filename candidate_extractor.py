"""
Candidate extraction from product page markup

Collects image candidates from structured data, <img>/<source>/<noscript>,
inline background images, preload links, gallery anchors and meta tags.
Bad elements are skipped one at a time; extraction never fails as a whole.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from image_filter import CandidateOrigin, ImageCandidate, is_raster_image_url
from structured_data import StructuredProduct, extract_primary_product, parse_price

logger = logging.getLogger(__name__)

LAZY_SRC_ATTRS = ('data-src', 'data-original', 'data-zoom-image', 'data-image', 'data-image-url')
BACKGROUND_RE = re.compile(r"background(?:-image)?\s*:[^;]*?url\((['\"]?)([^'\")]+)\1\)", re.I)
# a candidate separator is a comma followed by whitespace or right after a descriptor;
# commas inside URLs (Cloudinary transforms, data: URLs) are kept
SRCSET_SPLIT_RE = re.compile(r",\s+|(?<=\d[wxWX]),")
RETURNS_RE = re.compile(r"return|refund|exchange|devolución|retour|retorno|返品", re.I)
CURRENCY_CODE_RE = re.compile(r"\b(USD|EUR|GBP|JPY|AUD|CAD|CHF|CNY|HKD|SGD|SEK|NOK|DKK)\b", re.I)
CURRENCY_SYMBOL_RE = re.compile(r"[$€£¥]")
PRICE_NUMBER_RE = re.compile(r"(\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{2})|\d+(?:[.,]\d{2})?)")


# -----------------------------
# Data models
# -----------------------------

@dataclass(frozen=True)
class PageContext:
    """Textual evidence passed through to the refinement step"""
    title: Optional[str] = None
    description: Optional[str] = None
    returns_text: Optional[str] = None

    def as_text(self) -> str:
        return "\n\n".join(t for t in (self.description, self.returns_text) if t)


@dataclass(frozen=True)
class ClippedProduct:
    title: str
    url: str
    retailer: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None
    source: str = "dom"  # json-ld | dom | mixed


@dataclass
class ExtractionResult:
    candidates: List[ImageCandidate] = field(default_factory=list)
    meta_image: Optional[str] = None
    context: PageContext = field(default_factory=PageContext)
    product: Optional[ClippedProduct] = None


# -----------------------------
# URL helpers
# -----------------------------

def absolutize(base_url: str, src: Optional[str]) -> Optional[str]:
    """Resolve ``src`` against the page and keep it only if it is a raster image URL."""
    if not src:
        return None
    src = src.strip()
    if not src:
        return None
    if src.lower().startswith('data:'):
        return src if is_raster_image_url(src) else None
    try:
        if src.startswith('//'):
            href = 'https:' + src
        else:
            href = urljoin(base_url, src)
        p = urlparse(href)
    except ValueError:
        return None
    if p.scheme not in ('http', 'https') or not p.netloc:
        return None
    return href if is_raster_image_url(href) else None


def _descriptor_score(descriptor: Optional[str]) -> int:
    if not descriptor:
        return 0
    m_w = re.match(r"^(\d+)\s*w$", descriptor, re.I)
    if m_w:
        return int(m_w.group(1))
    m_x = re.match(r"^(\d+(?:\.\d+)?)\s*x$", descriptor, re.I)
    if m_x:
        return round(float(m_x.group(1)) * 1000)
    return 0


def pick_best_from_srcset(base_url: str, srcset: Optional[str]) -> Optional[str]:
    """Highest effective resolution entry of a srcset; ties keep the first seen.

    ``Nw`` scores N, ``Nx`` scores round(N * 1000), undecorated entries score 0.
    """
    if not srcset:
        return None
    best_url: Optional[str] = None
    best_score = -1
    for part in SRCSET_SPLIT_RE.split(srcset):
        seg = part.strip().strip(',')
        if not seg:
            continue
        pieces = seg.split()
        url_abs = absolutize(base_url, pieces[0])
        if not url_abs:
            continue
        score = _descriptor_score(pieces[1] if len(pieces) > 1 else None)
        if score > best_score:
            best_score, best_url = score, url_abs
    return best_url


def extract_background_url(style: Optional[str]) -> Optional[str]:
    if not style:
        return None
    m = BACKGROUND_RE.search(style)
    return m.group(2) if m else None


def _int_attr(el: Tag, name: str) -> int:
    m = re.match(r"\s*(\d+)", str(el.get(name) or ''))
    return int(m.group(1)) if m else 0


def _measured_area(el: Tag, urls: List[str], dims: Dict[str, Tuple[int, int]]) -> Optional[int]:
    areas = [w * h for w, h in (dims.get(u, (0, 0)) for u in urls) if w > 0 and h > 0]
    if areas:
        return max(areas)
    w, h = _int_attr(el, 'width'), _int_attr(el, 'height')
    return w * h if w > 0 and h > 0 else None


def _class_text(el: Tag) -> Optional[str]:
    cls = el.get('class')
    if isinstance(cls, list):
        return ' '.join(cls) or None
    return cls or None


def _meta_content(soup: BeautifulSoup, names: Tuple[str, ...]) -> Optional[str]:
    for n in names:
        el = soup.find('meta', attrs={'property': n}) or soup.find('meta', attrs={'name': n})
        if el and (el.get('content') or '').strip():
            return el['content'].strip()
    return None


# -----------------------------
# Candidate collection
# -----------------------------

def _img_candidates(img: Tag, base_url: str, dims: Dict[str, Tuple[int, int]]) -> List[ImageCandidate]:
    lazy = next((img.get(a) for a in LAZY_SRC_ATTRS if img.get(a)), None)
    urls = [
        pick_best_from_srcset(base_url, img.get('srcset')),
        pick_best_from_srcset(base_url, img.get('data-srcset')),
        absolutize(base_url, img.get('src')),
        absolutize(base_url, lazy),
    ]
    urls = [u for u in urls if u]
    area = _measured_area(img, urls, dims)
    return [
        ImageCandidate(
            url=u,
            origin=CandidateOrigin.IMG_ELEMENT,
            alt=img.get('alt') or None,
            class_tokens=_class_text(img),
            pixel_area=area,
        )
        for u in urls
    ]


def collect_dom_candidates(soup: BeautifulSoup, base_url: str, dims: Optional[Dict[str, Tuple[int, int]]] = None) -> List[ImageCandidate]:
    dims = dims or {}
    cands: List[ImageCandidate] = []

    meta_url = absolutize(base_url, _meta_content(soup, ('og:image', 'twitter:image')))
    if meta_url:
        cands.append(ImageCandidate(url=meta_url, origin=CandidateOrigin.META_TAG))

    for img in soup.find_all('img'):
        try:
            cands.extend(_img_candidates(img, base_url, dims))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping <img> element: {e}")

    # noscript fallbacks of lazy galleries
    for ns in soup.find_all('noscript'):
        try:
            inner = BeautifulSoup(ns.decode_contents(), 'lxml')
            for img in inner.find_all('img'):
                cands.extend(_img_candidates(img, base_url, dims))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping <noscript> block: {e}")

    for source in soup.select('picture source'):
        try:
            best = pick_best_from_srcset(base_url, source.get('srcset'))
            if best:
                cands.append(ImageCandidate(
                    url=best,
                    origin=CandidateOrigin.SOURCE_ELEMENT,
                    class_tokens=_class_text(source),
                    pixel_area=_measured_area(source, [best], dims),
                ))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping <source> element: {e}")

    for el in soup.find_all(True, attrs={'style': True}):
        try:
            u = absolutize(base_url, extract_background_url(el.get('style')))
            if u:
                w, h = dims.get(u, (0, 0))
                cands.append(ImageCandidate(
                    url=u,
                    origin=CandidateOrigin.BACKGROUND_STYLE,
                    class_tokens=_class_text(el),
                    pixel_area=w * h if w > 0 and h > 0 else None,
                ))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping background-image element: {e}")

    for link in soup.find_all('link', attrs={'as': 'image'}):
        try:
            rel = link.get('rel') or []
            rel = rel if isinstance(rel, list) else [rel]
            if 'preload' not in [r.lower() for r in rel]:
                continue
            best = pick_best_from_srcset(base_url, link.get('imagesrcset')) or absolutize(base_url, link.get('href'))
            if best:
                cands.append(ImageCandidate(url=best, origin=CandidateOrigin.PRELOAD_LINK))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping preload link: {e}")

    # zoom / gallery anchors linking straight to the full image
    for a in soup.find_all('a', href=True):
        try:
            href = absolutize(base_url, a.get('href'))
            if href:
                cands.append(ImageCandidate(url=href, origin=CandidateOrigin.ANCHOR_LINK, class_tokens=_class_text(a)))
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Skipping anchor element: {e}")

    return cands


def collect_structured_candidates(product: Optional[StructuredProduct], base_url: str) -> List[ImageCandidate]:
    if not product:
        return []
    out: List[ImageCandidate] = []
    for raw in product.images:
        u = absolutize(base_url, raw)
        if u:
            out.append(ImageCandidate(url=u, origin=CandidateOrigin.STRUCTURED_DATA))
    return out


# -----------------------------
# Page context & product details
# -----------------------------

def _first_text(*values: Optional[str]) -> Optional[str]:
    for v in values:
        if v and v.strip():
            return v.strip()
    return None


RETURNS_TAGS = ['details', 'section', 'div', 'article', 'li']


def _mentions_returns(el: Tag) -> bool:
    return bool(RETURNS_RE.search(el.get_text(' ', strip=True)))


def find_returns_text(soup: BeautifulSoup) -> Optional[str]:
    """Text of the innermost block mentioning returns or refunds."""
    first: Optional[Tag] = None
    for el in soup.find_all(RETURNS_TAGS, limit=300):
        if not _mentions_returns(el):
            continue
        if first is None:
            first = el
        if any(_mentions_returns(d) for d in el.find_all(RETURNS_TAGS)):
            continue
        return re.sub(r"\s{2,}", " ", el.get_text(' ', strip=True))[:1000]
    if first is None:
        return None
    return re.sub(r"\s{2,}", " ", first.get_text(' ', strip=True))[:1000]


def extract_page_context(soup: BeautifulSoup) -> PageContext:
    h1 = soup.find('h1')
    title_tag = soup.title.string if soup.title and soup.title.string else None
    return PageContext(
        title=_first_text(
            _meta_content(soup, ('og:title', 'twitter:title')),
            h1.get_text(strip=True) if h1 else None,
            title_tag,
        ),
        description=_meta_content(soup, ('og:description', 'description', 'twitter:description')),
        returns_text=find_returns_text(soup),
    )


def parse_price_from_text(text: Optional[str]) -> Tuple[Optional[float], Optional[str]]:
    if not text:
        return None, None
    code = CURRENCY_CODE_RE.search(text)
    symbol = CURRENCY_SYMBOL_RE.search(text)
    currency = code.group(1).upper() if code else (symbol.group(0) if symbol else None)
    m = PRICE_NUMBER_RE.search(re.sub(r"\s", "", text))
    if not m:
        return None, currency
    return parse_price(m.group(1)), currency


def _dom_price(soup: BeautifulSoup) -> Tuple[Optional[float], Optional[str]]:
    amount = _meta_content(soup, ('product:price:amount', 'og:price:amount'))
    currency = _meta_content(soup, ('product:price:currency', 'og:price:currency'))
    if amount or currency:
        price, parsed_currency = parse_price_from_text(f"{currency or ''} {amount or ''}")
        return price, currency or parsed_currency
    el = soup.select_one('[itemprop="price"], .price, .ProductPrice, [data-testid*="price"]')
    if not el:
        return None, None
    return parse_price_from_text(el.get('content') or el.get_text(' ', strip=True))


def build_product(soup: BeautifulSoup, base_url: str, context: PageContext,
                  structured: Optional[StructuredProduct]) -> ClippedProduct:
    """Prefer JSON-LD fields and fill the gaps from meta tags / visible DOM."""
    dom_price, dom_currency = _dom_price(soup)
    host = urlparse(base_url).netloc.lower()
    retailer = host[4:] if host.startswith('www.') else host
    dom_url = _meta_content(soup, ('og:url',)) or base_url

    if structured is None:
        return ClippedProduct(
            title=context.title or "Untitled product",
            url=dom_url,
            retailer=retailer or None,
            description=context.description,
            price=dom_price,
            currency=dom_currency,
            source="dom",
        )
    from_json_ld = all(v is not None for v in (structured.name, structured.description, structured.price, structured.currency))
    return ClippedProduct(
        title=structured.name or context.title or "Untitled product",
        url=structured.url or dom_url,
        retailer=retailer or None,
        description=structured.description or context.description,
        price=structured.price if structured.price is not None else dom_price,
        currency=structured.currency or dom_currency,
        source="json-ld" if from_json_ld else "mixed",
    )


def extract_candidates(html: str, base_url: str, dims: Optional[Dict[str, Tuple[int, int]]] = None) -> ExtractionResult:
    """Parse a page and collect every image candidate plus the page's textual context."""
    soup = BeautifulSoup(html or '', 'lxml')
    structured = extract_primary_product(soup)
    candidates = collect_structured_candidates(structured, base_url) + collect_dom_candidates(soup, base_url, dims)
    context = extract_page_context(soup)
    meta_image = absolutize(base_url, _meta_content(soup, ('og:image',)))
    logger.info(f"Extracted {len(candidates)} image candidates from {base_url}")
    return ExtractionResult(
        candidates=candidates,
        meta_image=meta_image,
        context=context,
        product=build_product(soup, base_url, context, structured),
    )
