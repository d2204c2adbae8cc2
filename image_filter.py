"""
Image candidate filtering and scoring

Heuristics that prefer product-only images (packshots, flat lays, detail views)
and down-rank editorial, on-model and lifestyle shots. Everything here is a pure
function of the candidate: no I/O, no shared state.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse, parse_qsl, urlencode, urlunparse

logger = logging.getLogger(__name__)


# -----------------------------
# Data models
# -----------------------------

class CandidateOrigin(str, Enum):
    STRUCTURED_DATA = "structured-data"
    IMG_ELEMENT = "img-element"
    SOURCE_ELEMENT = "source-element"
    BACKGROUND_STYLE = "background-style"
    PRELOAD_LINK = "preload-link"
    ANCHOR_LINK = "anchor-link"
    META_TAG = "meta-tag"


@dataclass(frozen=True)
class ImageCandidate:
    url: str
    origin: Optional[CandidateOrigin] = None
    alt: Optional[str] = None
    class_tokens: Optional[str] = None
    pixel_area: Optional[int] = None  # width * height when measurable


# -----------------------------
# URL filters
# -----------------------------

RASTER_EXT_RE = re.compile(r"\.(jpe?g|png|webp|avif)(?:[?#]|$)", re.I)
REJECTED_EXT_RE = re.compile(r"\.(svg|gif|ico)(?:[?#]|$)", re.I)
DATA_IMAGE_RE = re.compile(r"^data:image/", re.I)

# Resizing / quality / format params dropped from the dedup key
VOLATILE_PARAMS = frozenset({
    "w", "h", "width", "height", "q", "quality", "auto", "fit", "crop", "format", "fm",
    "bg", "dpr", "imwidth", "wid", "hei", "resmode", "res", "size",
})

WIDTH_PARAMS = ("w", "width", "imwidth", "wid")


def is_raster_image_url(u: str) -> bool:
    """Accept common raster extensions and inline raster data; reject vector/icon/animated formats."""
    if not u:
        return False
    if DATA_IMAGE_RE.match(u):
        return not u.lower().startswith("data:image/svg")
    if REJECTED_EXT_RE.search(u):
        return False
    return bool(RASTER_EXT_RE.search(u))


def normalize_for_dedupe(u: str) -> str:
    """Normalize URL for de-duplication (remove volatile params and fragment)."""
    if DATA_IMAGE_RE.match(u or ""):
        return u
    try:
        p = urlparse(u)
        if not p.scheme or not p.netloc:
            return u
        kept = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k.lower() not in VOLATILE_PARAMS]
        query = urlencode(kept)
        return urlunparse((p.scheme, p.netloc, p.path, p.params, query, ""))
    except ValueError:
        return u


# -----------------------------
# Scoring heuristic
# -----------------------------

PACKSHOT_SUFFIX_RE = re.compile(r"-p(?:[./-]|$)", re.I)
EDITORIAL_SUFFIX_RE = re.compile(r"-e\d*(?:[./-]|$)", re.I)


def _has_any(hay: str, keys: Iterable[str]) -> bool:
    s = hay.lower()
    return any(k in s for k in keys)


def _url_path(u: str) -> str:
    try:
        return urlparse(u).path.lower()
    except ValueError:
        return u.lower()


def path_token_score(url: str) -> int:
    p = _url_path(url)
    score = 0
    if PACKSHOT_SUFFIX_RE.search(p):
        score += 300
    if _has_any(p, ("packshot", "product", "/p/", "/prod/", "/products/")):
        score += 250
    if _has_any(p, ("still", "studio", "cutout", "isolated", "isolation")):
        score += 180
    if _has_any(p, ("front", "back", "side", "detail", "flat", "lay")):
        score += 120
    if EDITORIAL_SUFFIX_RE.search(p):
        score -= 250
    if _has_any(p, ("look", "outfit", "editorial", "campaign", "lifestyle")):
        score -= 200
    if _has_any(p, ("model", "catwalk", "runway")):
        score -= 160
    # video is effectively disqualifying
    if _has_any(p, ("/video", ".mp4", ".webm")):
        score -= 400
    return score


def alt_text_score(alt: Optional[str]) -> int:
    if not alt:
        return 0
    score = 0
    if _has_any(alt, ("front", "back", "side", "detail", "product")):
        score += 80
    if _has_any(alt, ("flat", "lay", "packshot", "still")):
        score += 120
    if _has_any(alt, ("model", "on model", "worn")):
        score -= 120
    if _has_any(alt, ("look", "outfit")):
        score -= 80
    return score


def class_token_score(cls: Optional[str]) -> int:
    if not cls:
        return 0
    score = 0
    if _has_any(cls, ("product", "gallery", "packshot", "still", "detail")):
        score += 60
    if _has_any(cls, ("editorial", "look", "outfit", "campaign", "model")):
        score -= 120
    return score


def origin_score(origin: Optional[CandidateOrigin]) -> int:
    if origin in (CandidateOrigin.IMG_ELEMENT, CandidateOrigin.SOURCE_ELEMENT):
        return 20
    if origin in (CandidateOrigin.BACKGROUND_STYLE, CandidateOrigin.ANCHOR_LINK):
        return -10
    return 0


def area_bonus(pixel_area: Optional[int]) -> int:
    if pixel_area and pixel_area > 0:
        return min(200, pixel_area // 4000)
    return 0


def _width_from_query(url: str) -> int:
    try:
        q = {k.lower(): v for k, v in parse_qsl(urlparse(url).query)}
    except ValueError:
        return 0
    for key in WIDTH_PARAMS:
        try:
            w = int(q.get(key, ""))
        except ValueError:
            continue
        if w > 0:
            return w
    return 0


def resolution_fallback_score(url: str) -> float:
    """Coarse resolution guess when the DOM could not measure the image."""
    w = _width_from_query(url)
    if w:
        return min(w, 2400) / 4
    if re.search(r"/p/|product|catalog|assets|images", url, re.I):
        return 100
    return 40


def score_image_candidate(c: ImageCandidate) -> float:
    """Score one candidate. Higher is better (product-only packshot preferred)."""
    score = float(path_token_score(c.url))
    score += alt_text_score(c.alt)
    score += class_token_score(c.class_tokens)
    score += origin_score(c.origin)
    if c.pixel_area and c.pixel_area > 0:
        score += area_bonus(c.pixel_area)
    else:
        score += resolution_fallback_score(c.url)
    return score


# -----------------------------
# Deduplication
# -----------------------------

def dedupe_candidates(cands: Iterable[ImageCandidate], prefer: Iterable[str] = ()) -> List[ImageCandidate]:
    """Collapse URL variants to one entry per normalized key, keeping the strictly best score.

    Ties keep the first inserted variant. URLs listed in ``prefer`` (e.g. anchors)
    always win their key. Output keeps first-seen key order.
    """
    preferred = set(prefer)
    best: Dict[str, ImageCandidate] = {}
    best_score: Dict[str, float] = {}
    for c in cands:
        key = normalize_for_dedupe(c.url)
        s = score_image_candidate(c)
        prev = best.get(key)
        if prev is None:
            best[key], best_score[key] = c, s
            continue
        if prev.url in preferred:
            continue
        if c.url in preferred or s > best_score[key]:
            best[key], best_score[key] = c, s
    return list(best.values())


def finalize_image_candidates(cands: Iterable[ImageCandidate], max_images: int = 24) -> List[str]:
    """Unique, score-ranked URL list."""
    unique = dedupe_candidates(cands)
    ranked = sorted(unique, key=score_image_candidate, reverse=True)
    return [c.url for c in ranked][:max_images]
