"""
Primary product selection

From many image candidates, keep only those belonging to the primary product on
the page (multiple angles), excluding cross-sells, banners and other items.

- Extract a product key from each URL (SKU-like digit runs, else path segments).
- Compare every candidate to the anchors (token Jaccard + same-host bump).
- Cluster by product key and pick the cluster that agrees most with the anchors.
"""

import re
import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set

from urllib.parse import urlparse

from image_filter import (
    CandidateOrigin,
    ImageCandidate,
    PACKSHOT_SUFFIX_RE,
    area_bonus,
    normalize_for_dedupe,
    score_image_candidate,
)

logger = logging.getLogger(__name__)

NO_KEY = "__nokey__"
MAX_ANCHORS = 3

SKU_SUFFIX_RE = re.compile(r"(\d{6,})[-_](?:p|e)\d*(?:[./_-]|$)", re.I)
DIGIT_RUN_RE = re.compile(r"\d{6,}")
TOKEN_SPLIT_RE = re.compile(r"[/._\-]+")

ANCHOR_WEIGHT = 400
SAME_KEY_BONUS = 1500
PACKSHOT_BONUS = 500
SAME_HOST_BONUS = 5
NO_KEY_OVERRIDE_BONUS = 300
HOST_BUMP = 0.05


@dataclass(frozen=True)
class ScoredCandidate:
    candidate: ImageCandidate
    score: float
    product_key: Optional[str] = None
    anchor_similarity: float = 0.0
    perceptual_distance: Optional[int] = None
    color_similarity: Optional[float] = None

    @property
    def url(self) -> str:
        return self.candidate.url


# -----------------------------
# URL tokens & product keys
# -----------------------------

def _path(u: str) -> Optional[str]:
    try:
        return urlparse(u).path.lower()
    except ValueError:
        return None


def _host(u: str) -> Optional[str]:
    try:
        return urlparse(u).hostname
    except ValueError:
        return None


def url_tokens(u: str) -> Set[str]:
    """Path tokens split on separators, plus every 6+ digit run as its own token."""
    path = _path(u)
    if path is None:
        return set()
    tokens = {t for t in TOKEN_SPLIT_RE.split(path) if t}
    tokens.update(DIGIT_RUN_RE.findall(path))
    return tokens


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    inter = len(a & b)
    return inter / (len(a) + len(b) - inter)


def extract_product_key(u: str) -> Optional[str]:
    """SKU+variant digits, else the longest 6+ digit run, else the last two path segments."""
    path = _path(u)
    if path is None:
        return None

    m = SKU_SUFFIX_RE.search(path)
    if m:
        return m.group(1)

    runs = DIGIT_RUN_RE.findall(path)
    if runs:
        # max() keeps the first of equally long runs
        return max(runs, key=len)

    segs = [re.sub(r"\.[a-z0-9]+$", "", s) for s in path.split("/") if s]
    segs = [s for s in segs if s]
    if not segs:
        return None
    return ":".join(segs[-2:])


def has_packshot_suffix(u: str) -> bool:
    path = _path(u)
    return bool(path and PACKSHOT_SUFFIX_RE.search(path))


# -----------------------------
# Anchor similarity
# -----------------------------

def anchor_similarity(u: str, anchors: List[str]) -> float:
    if not anchors:
        return 0.0
    tokens = url_tokens(u)
    best = max(jaccard(tokens, url_tokens(a)) for a in anchors)
    host = _host(u)
    anchor_hosts = {h for h in (_host(a) for a in anchors) if h}
    if host and host in anchor_hosts:
        best += HOST_BUMP
    return max(0.0, min(1.0, best))


def score_against_anchors(cands: Iterable[ImageCandidate], anchors: List[str]) -> List[ScoredCandidate]:
    return [
        ScoredCandidate(
            candidate=c,
            score=score_image_candidate(c),
            product_key=extract_product_key(c.url),
            anchor_similarity=anchor_similarity(c.url, anchors),
        )
        for c in cands
    ]


def pick_hero_candidate(cands: Iterable[ImageCandidate]) -> Optional[str]:
    """The <img>/<source> candidate with the best score plus area bump."""
    best_url: Optional[str] = None
    best_value = float("-inf")
    for c in cands:
        if c.origin not in (CandidateOrigin.IMG_ELEMENT, CandidateOrigin.SOURCE_ELEMENT):
            continue
        value = score_image_candidate(c) + area_bonus(c.pixel_area)
        if value > best_value:
            best_value, best_url = value, c.url
    return best_url


def find_anchor_images(meta_image: Optional[str], cands: Iterable[ImageCandidate]) -> List[str]:
    """Meta primary image plus the hero element, unique, at most MAX_ANCHORS."""
    anchors = [u for u in (meta_image, pick_hero_candidate(cands)) if u]
    return list(dict.fromkeys(anchors))[:MAX_ANCHORS]


# -----------------------------
# Clustering
# -----------------------------

def cluster_by_product_key(scored: Iterable[ScoredCandidate]) -> Dict[str, List[ScoredCandidate]]:
    clusters: Dict[str, List[ScoredCandidate]] = {}
    for sc in scored:
        clusters.setdefault(sc.product_key or NO_KEY, []).append(sc)
    return clusters


def cluster_score(members: List[ScoredCandidate], anchors: List[str], anchor_keys: Set[str], key: str) -> float:
    anchor_hosts = {h for h in (_host(a) for a in anchors) if h}
    total = sum(sc.score for sc in members)
    total += sum(sc.anchor_similarity * ANCHOR_WEIGHT for sc in members)
    if key in anchor_keys:
        total += SAME_KEY_BONUS
    if any(has_packshot_suffix(sc.url) for sc in members):
        total += PACKSHOT_BONUS
    total += SAME_HOST_BONUS * sum(1 for sc in members if _host(sc.url) in anchor_hosts)
    return total


def pick_primary_cluster(clusters: Dict[str, List[ScoredCandidate]], anchors: List[str]) -> Optional[str]:
    if not clusters:
        return None
    anchor_keys = {k for k in (extract_product_key(a) for a in anchors) if k}

    best_key: Optional[str] = None
    best_score = float("-inf")
    for key, members in clusters.items():
        s = cluster_score(members, anchors, anchor_keys, key)
        if s > best_score:
            best_key, best_score = key, s

    if best_key != NO_KEY:
        return best_key

    # A keyed cluster with a packshot may still beat a winning "no key" cluster
    alt_key, alt_score = best_key, best_score
    for key, members in clusters.items():
        if key == NO_KEY or not any(has_packshot_suffix(sc.url) for sc in members):
            continue
        s = cluster_score(members, anchors, anchor_keys, key) + NO_KEY_OVERRIDE_BONUS
        if s > alt_score:
            alt_key, alt_score = key, s
    if alt_key != best_key:
        logger.debug(f"Preferring keyed packshot cluster {alt_key} over unkeyed images")
    return alt_key


def select_primary_product_images(
    cands: List[ImageCandidate],
    anchors: List[str],
    max_images: int = 24,
) -> List[str]:
    """Ordered URLs (best first) of the images that belong to the primary product."""
    uniq_anchors = list(dict.fromkeys(a for a in anchors if a))[:MAX_ANCHORS]
    if not uniq_anchors:
        hero = pick_hero_candidate(cands)
        if hero:
            uniq_anchors.append(hero)

    scored = score_against_anchors(cands, uniq_anchors)
    clusters = cluster_by_product_key(scored)
    best_key = pick_primary_cluster(clusters, uniq_anchors)
    if best_key is None:
        return []

    chosen = sorted(clusters[best_key], key=lambda sc: (-sc.anchor_similarity, -sc.score))
    logger.info(f"Primary cluster {best_key}: {len(chosen)} of {len(scored)} candidates")

    out: List[str] = []
    seen: Set[str] = set()
    for sc in chosen:
        key = normalize_for_dedupe(sc.url)
        if key in seen:
            continue
        seen.add(key)
        out.append(sc.url)
        if len(out) >= max_images:
            break
    return out


def with_perceptual_features(sc: ScoredCandidate, distance: Optional[int], color_sim: Optional[float]) -> ScoredCandidate:
    """Copy of ``sc`` carrying pixel-derived features; color is kept only alongside a distance."""
    if distance is None:
        return replace(sc, perceptual_distance=None, color_similarity=None)
    return replace(sc, perceptual_distance=distance, color_similarity=color_sim)
