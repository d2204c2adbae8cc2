"""
Three-bucket partition of image candidates

Splits a page's candidates into confident / semiConfident / notConfident with
respect to the anchor images. Stages run strictly in order:

1. rule-based seeding from perceptual distance, composite score and URL flags
2. borderline selection (semiConfident members, capped by the inline budget)
3. optional external refinement, applied only to known URLs
4. invariant enforcement (every candidate exactly once, anchors confident,
   confident never empty)
5. final ordering inside each bucket

A failing refinement collaborator is a logged degradation; stage 4 then runs
on the seeded buckets.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from urllib.parse import urlparse

from image_filter import ImageCandidate, dedupe_candidates, normalize_for_dedupe
from image_cluster import ScoredCandidate, score_against_anchors, with_perceptual_features
from vision import (
    FeatureBatchError,
    ImageFeatures,
    average_color,
    color_similarity,
    composite_score,
    is_editorial_url,
    is_packshot_url,
    min_distance_to_anchors,
    resolution_score,
)

logger = logging.getLogger(__name__)

MAX_ANCHORS = 3
MAX_CONTEXT_CHARS = 1600
EXTREMES_PER_BUCKET = 2
UNKNOWN_DISTANCE = 64

STATUS_OK = "OK"
STATUS_INVALID_INPUT = "INVALID_INPUT"
STATUS_FEATURES_FAILED = "FEATURES_FAILED"


# -----------------------------
# Data models
# -----------------------------

class Bucket(str, Enum):
    CONFIDENT = "confident"
    SEMI_CONFIDENT = "semiConfident"
    NOT_CONFIDENT = "notConfident"


BUCKET_ORDER = (Bucket.CONFIDENT, Bucket.SEMI_CONFIDENT, Bucket.NOT_CONFIDENT)


@dataclass(frozen=True)
class BucketThresholds:
    """Seeding thresholds. Confident must stay tighter than semiConfident."""
    confident_max_distance: int = 12
    confident_min_composite: float = 0.70
    packshot_max_distance: int = 16
    semi_max_distance: int = 22
    semi_min_composite: float = 0.50
    promote_count: int = 2

    def __post_init__(self):
        for name in ('confident_max_distance', 'packshot_max_distance', 'semi_max_distance'):
            v = getattr(self, name)
            if not 0 <= v <= UNKNOWN_DISTANCE:
                raise ValueError(f"{name} must be within 0..64, got {v}")
        for name in ('confident_min_composite', 'semi_min_composite'):
            v = getattr(self, name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{name} must be within 0..1, got {v}")
        if self.confident_max_distance > self.semi_max_distance:
            raise ValueError("confident_max_distance must not exceed semi_max_distance")
        if self.packshot_max_distance > self.semi_max_distance:
            raise ValueError("packshot_max_distance must not exceed semi_max_distance")
        if self.confident_min_composite < self.semi_min_composite:
            raise ValueError("confident_min_composite must not be below semi_min_composite")
        if self.promote_count < 1:
            raise ValueError("promote_count must be at least 1")


@dataclass(frozen=True)
class BucketPartition:
    confident: Tuple[str, ...] = ()
    semi_confident: Tuple[str, ...] = ()
    not_confident: Tuple[str, ...] = ()

    @classmethod
    def from_groups(cls, groups: Dict[str, Iterable[str]]) -> "BucketPartition":
        return cls(
            confident=tuple(groups.get(Bucket.CONFIDENT.value) or ()),
            semi_confident=tuple(groups.get(Bucket.SEMI_CONFIDENT.value) or ()),
            not_confident=tuple(groups.get(Bucket.NOT_CONFIDENT.value) or ()),
        )

    def bucket(self, b: Bucket) -> Tuple[str, ...]:
        if b is Bucket.CONFIDENT:
            return self.confident
        if b is Bucket.SEMI_CONFIDENT:
            return self.semi_confident
        return self.not_confident

    def all_urls(self) -> List[str]:
        return list(self.confident) + list(self.semi_confident) + list(self.not_confident)

    def as_dict(self) -> Dict[str, List[str]]:
        return {b.value: list(self.bucket(b)) for b in BUCKET_ORDER}


@dataclass(frozen=True)
class CandidateEvidence:
    """Everything the seeding rules look at for one unique candidate."""
    scored: ScoredCandidate
    composite: float
    resolution: Optional[float] = None
    editorial: bool = False
    packshot: bool = False

    @property
    def url(self) -> str:
        return self.scored.url

    @property
    def distance(self) -> Optional[int]:
        return self.scored.perceptual_distance


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    score: float
    anchor_similarity: float
    perceptual_distance: Optional[int]
    color_similarity: Optional[float]
    composite: float
    origin: Optional[str]
    bucket: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "score": self.score,
            "anchorSimilarity": self.anchor_similarity,
            "perceptualDistance": self.perceptual_distance,
            "colorSimilarity": self.color_similarity,
            "composite": self.composite,
            "origin": self.origin,
            "bucket": self.bucket,
        }


@dataclass(frozen=True)
class InlineImage:
    url: str
    mime_type: str
    data: bytes


@dataclass
class RefinementRequest:
    """What the external refinement collaborator receives."""
    anchors: List[str]
    manifest: List[ManifestEntry]
    anchor_images: List[InlineImage] = field(default_factory=list)
    inline_images: List[InlineImage] = field(default_factory=list)
    page_title: Optional[str] = None
    context_text: Optional[str] = None


class RefinementError(Exception):
    """The refinement collaborator returned nothing usable."""


@dataclass
class PartitionResult:
    status: str
    partition: Optional[BucketPartition] = None
    error_message: Optional[str] = None
    refined: bool = False
    degraded: bool = False
    debug: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


# -----------------------------
# Evidence
# -----------------------------

def build_evidence(
    scored: Sequence[ScoredCandidate],
    features: Dict[str, Optional[ImageFeatures]],
    anchors: Sequence[str],
) -> List[CandidateEvidence]:
    """Attach perceptual distance, color similarity and the composite score to each candidate."""
    anchor_feats = [features.get(a) for a in anchors]
    anchor_hashes = [f.dhash for f in anchor_feats if f is not None]
    anchor_mean = average_color(f.mean_color for f in anchor_feats if f is not None)

    out: List[CandidateEvidence] = []
    for sc in scored:
        f = features.get(sc.url)
        distance: Optional[int] = None
        color_sim: Optional[float] = None
        resolution: Optional[float] = None
        if f is not None:
            resolution = resolution_score(f.width, f.height)
            if anchor_hashes:
                distance = min_distance_to_anchors(f.dhash, anchor_hashes)
                color_sim = color_similarity(f.mean_color, anchor_mean)
        enriched = with_perceptual_features(sc, distance, color_sim)
        out.append(CandidateEvidence(
            scored=enriched,
            composite=composite_score(sc.url, distance, color_sim, resolution, sc.anchor_similarity),
            resolution=resolution,
            editorial=is_editorial_url(sc.url),
            packshot=is_packshot_url(sc.url),
        ))
    return out


def ranking_key(e: CandidateEvidence) -> Tuple[float, int]:
    d = UNKNOWN_DISTANCE if e.distance is None else e.distance
    return -e.composite, d


# -----------------------------
# Stage 1: rule-based seeding
# -----------------------------

def classify_candidate(e: CandidateEvidence, t: BucketThresholds) -> Bucket:
    d = e.distance
    if not e.editorial and ((d is not None and d <= t.confident_max_distance) or e.composite >= t.confident_min_composite):
        return Bucket.CONFIDENT
    if e.packshot and d is not None and d <= t.packshot_max_distance:
        return Bucket.CONFIDENT
    if (d is not None and d <= t.semi_max_distance) or e.composite >= t.semi_min_composite:
        return Bucket.SEMI_CONFIDENT
    return Bucket.NOT_CONFIDENT


def seed_buckets(evidence: Sequence[CandidateEvidence], t: BucketThresholds) -> Dict[str, Bucket]:
    return {e.url: classify_candidate(e, t) for e in evidence}


# -----------------------------
# Stage 2: borderline selection
# -----------------------------

def select_borderline(evidence: Sequence[CandidateEvidence], assignment: Dict[str, Bucket], max_inline: int) -> List[CandidateEvidence]:
    semi = [e for e in evidence if assignment.get(e.url) is Bucket.SEMI_CONFIDENT]
    return sorted(semi, key=ranking_key)[:max(0, max_inline)]


def select_inline_candidates(
    evidence: Sequence[CandidateEvidence],
    assignment: Dict[str, Bucket],
    borderline: Sequence[CandidateEvidence],
    max_inline: int,
) -> List[str]:
    """Ambiguous members first, then the best and worst members of every bucket."""
    chosen: List[str] = [e.url for e in borderline]
    for b in BUCKET_ORDER:
        members = sorted((e for e in evidence if assignment.get(e.url) is b), key=ranking_key)
        extremes = members[:1] + members[-1:] if len(members) > 1 else members
        for e in extremes[:EXTREMES_PER_BUCKET]:
            if e.url not in chosen:
                chosen.append(e.url)
    return chosen[:max(0, max_inline)]


# -----------------------------
# Stage 3: refinement merge
# -----------------------------

def build_manifest(evidence: Sequence[CandidateEvidence], assignment: Dict[str, Bucket]) -> List[ManifestEntry]:
    return [
        ManifestEntry(
            url=e.url,
            score=e.scored.score,
            anchor_similarity=e.scored.anchor_similarity,
            perceptual_distance=e.distance,
            color_similarity=e.scored.color_similarity,
            composite=e.composite,
            origin=e.scored.candidate.origin.value if e.scored.candidate.origin else None,
            bucket=assignment[e.url].value,
        )
        for e in evidence
    ]


def apply_refinement(known_urls: Iterable[str], refined: BucketPartition) -> Dict[str, Bucket]:
    """Bucket assignment taken from the collaborator, restricted to known candidates.

    Unknown URLs are ignored. A URL listed in more than one bucket keeps the
    most confident one. Candidates the collaborator left out are absent.
    """
    by_key = {normalize_for_dedupe(u): u for u in known_urls}
    out: Dict[str, Bucket] = {}
    ignored = 0
    for b in BUCKET_ORDER:
        for raw in refined.bucket(b):
            url = by_key.get(normalize_for_dedupe(str(raw)))
            if url is None:
                ignored += 1
                continue
            out.setdefault(url, b)
    if ignored:
        logger.info(f"Ignored {ignored} unknown URLs returned by refinement")
    return out


# -----------------------------
# Stage 4: invariants
# -----------------------------

def enforce_invariants(
    evidence: Sequence[CandidateEvidence],
    assignment: Dict[str, Bucket],
    anchors: Sequence[str],
    t: BucketThresholds,
    debug: Optional[Dict[str, Any]] = None,
) -> Dict[str, Bucket]:
    debug = debug if debug is not None else {}
    out: Dict[str, Bucket] = {}

    missing = 0
    for e in evidence:
        b = assignment.get(e.url)
        if b is None:
            missing += 1
            b = Bucket.SEMI_CONFIDENT
        out[e.url] = b
    if missing:
        logger.info(f"Placed {missing} unclassified candidates into semiConfident")

    anchor_keys = {normalize_for_dedupe(a) for a in anchors}
    forced = 0
    for e in evidence:
        if normalize_for_dedupe(e.url) in anchor_keys and out[e.url] is not Bucket.CONFIDENT:
            out[e.url] = Bucket.CONFIDENT
            forced += 1

    promoted = 0
    if evidence and not any(b is Bucket.CONFIDENT for b in out.values()):
        pool = [e for e in evidence if out[e.url] is Bucket.SEMI_CONFIDENT] or list(evidence)
        for e in sorted(pool, key=ranking_key)[:t.promote_count]:
            out[e.url] = Bucket.CONFIDENT
            promoted += 1
        logger.info(f"Promoted {promoted} candidates into an empty confident bucket")

    debug.update({"missing_after_refine": missing, "anchors_forced": forced, "promoted": promoted})
    return out


# -----------------------------
# Stage 5: ordering
# -----------------------------

def order_buckets(evidence: Sequence[CandidateEvidence], assignment: Dict[str, Bucket]) -> BucketPartition:
    ranked = sorted(evidence, key=ranking_key)
    groups: Dict[str, List[str]] = {b.value: [] for b in BUCKET_ORDER}
    for e in ranked:
        groups[assignment[e.url].value].append(e.url)
    return BucketPartition.from_groups(groups)


# -----------------------------
# Orchestration
# -----------------------------

def _is_absolute(u: str) -> bool:
    if u.lower().startswith('data:image/'):
        return True
    try:
        p = urlparse(u)
    except ValueError:
        return False
    return p.scheme in ('http', 'https') and bool(p.netloc)


async def _collect_inline(fetcher, urls: Sequence[str]) -> List[InlineImage]:
    if not urls:
        return []
    payloads = await fetcher.fetch_payloads(urls)
    return [InlineImage(url=u, mime_type=payloads[u][1], data=payloads[u][0]) for u in urls if payloads.get(u)]


async def partition_candidates(
    candidates: Sequence[ImageCandidate],
    anchors: Sequence[str],
    fetcher,
    refiner=None,
    thresholds: Optional[BucketThresholds] = None,
    max_inline: int = 12,
    page_title: Optional[str] = None,
    context_text: Optional[str] = None,
    batch_timeout: Optional[float] = 90.0,
    refine_timeout: Optional[float] = 45.0,
) -> PartitionResult:
    """
    Partition candidates into confidence buckets relative to the anchor images.

    Args:
        candidates: Raw candidates; variants of the same image are collapsed first
        anchors: Trusted product image URLs (at most 3 are used)
        fetcher: Object with ``fetch_all(urls, batch_timeout)`` and ``fetch_payloads(urls)``
        refiner: Optional object with ``async refine(RefinementRequest) -> BucketPartition``
        max_inline: Budget of candidate images sent inline to the refiner

    Returns:
        PartitionResult; ``INVALID_INPUT`` for an empty or unusable candidate list,
        ``FEATURES_FAILED`` when the feature batch as a whole did not complete
    """
    t = thresholds or BucketThresholds()
    usable = [c for c in candidates or [] if c.url and _is_absolute(c.url)]
    if not usable:
        return PartitionResult(status=STATUS_INVALID_INPUT, error_message="No usable candidate URLs provided")

    anchor_list = list(dict.fromkeys(a for a in anchors or [] if a and _is_absolute(a)))[:MAX_ANCHORS]
    unique = dedupe_candidates(usable, prefer=anchor_list)
    scored = score_against_anchors(unique, anchor_list)
    debug: Dict[str, Any] = {
        "candidates_in": len(candidates),
        "candidates_unique": len(unique),
        "anchors": len(anchor_list),
    }

    try:
        features = await fetcher.fetch_all(anchor_list + [sc.url for sc in scored], batch_timeout=batch_timeout)
    except FeatureBatchError as e:
        logger.error(f"Feature batch failed: {e}")
        return PartitionResult(status=STATUS_FEATURES_FAILED, error_message=str(e), debug=debug)
    debug["features_ok"] = sum(1 for sc in scored if features.get(sc.url) is not None)

    evidence = build_evidence(scored, features, anchor_list)
    seeded = seed_buckets(evidence, t)
    borderline = select_borderline(evidence, seeded, max_inline)
    debug["borderline"] = len(borderline)

    assignment = seeded
    refined = False
    if refiner is not None:
        try:
            inline_urls = select_inline_candidates(evidence, seeded, borderline, max_inline)
            request = RefinementRequest(
                anchors=anchor_list,
                manifest=build_manifest(evidence, seeded),
                anchor_images=await _collect_inline(fetcher, anchor_list),
                inline_images=await _collect_inline(fetcher, inline_urls),
                page_title=page_title,
                context_text=(context_text or "")[:MAX_CONTEXT_CHARS] or None,
            )
            debug["inline_images"] = len(request.anchor_images) + len(request.inline_images)
            result = await asyncio.wait_for(refiner.refine(request), timeout=refine_timeout)
            if result is None:
                raise RefinementError("refiner returned no partition")
            assignment = apply_refinement(seeded.keys(), result)
            refined = True
        except Exception as e:
            # collaborator failure of any kind keeps the seeded buckets
            logger.warning(f"Refinement skipped, using rule-based buckets: {e}")

    final = enforce_invariants(evidence, assignment, anchor_list, t, debug)
    partition = order_buckets(evidence, final)
    debug["refined"] = refined
    logger.info(
        f"Partitioned {len(evidence)} images: {len(partition.confident)} confident, "
        f"{len(partition.semi_confident)} semi, {len(partition.not_confident)} not"
    )
    return PartitionResult(status=STATUS_OK, partition=partition, refined=refined, debug=debug)
