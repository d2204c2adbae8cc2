"""
End-to-end entry points

analyze_page: markup -> candidates, anchors and the ranked primary-product list.
partition_page / partition_urls: candidates + anchors -> confidence buckets.

Every entry point returns an explicit result object; a failure is never an
empty "success".
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from bucket_partitioner import (
    STATUS_FEATURES_FAILED,
    STATUS_INVALID_INPUT,
    STATUS_OK,
    BucketPartition,
    PartitionResult,
    partition_candidates,
)
from candidate_extractor import ClippedProduct, PageContext, extract_candidates
from image_cluster import find_anchor_images, select_primary_product_images
from image_filter import ImageCandidate, normalize_for_dedupe
from refinement import GeminiRefiner
from settings import PipelineSettings
from vision import ImageFeatureFetcher

logger = logging.getLogger(__name__)

STATUS_NO_CANDIDATES = "NO_CANDIDATES"

FALLBACK_CONFIDENT = 3
FALLBACK_SEMI = 3


@dataclass
class PageAnalysis:
    status: str
    base_url: Optional[str] = None
    product: Optional[ClippedProduct] = None
    context: PageContext = field(default_factory=PageContext)
    candidates: List[ImageCandidate] = field(default_factory=list)
    anchors: List[str] = field(default_factory=list)
    ranked: List[str] = field(default_factory=list)
    error_message: Optional[str] = None


def make_fetcher(settings: PipelineSettings) -> ImageFeatureFetcher:
    return ImageFeatureFetcher(
        concurrency=settings.fetch_concurrency,
        timeout_seconds=settings.fetch_timeout_seconds,
    )


def make_refiner(settings: PipelineSettings) -> Optional[GeminiRefiner]:
    if not settings.refinement_configured:
        logger.info("GEMINI_API_KEY not set, bucket refinement disabled")
        return None
    return GeminiRefiner(api_key=settings.gemini_api_key, model_name=settings.gemini_model)


def analyze_page(
    html: Optional[str],
    base_url: Optional[str],
    dims: Optional[Dict[str, Tuple[int, int]]] = None,
    anchors: Optional[Sequence[str]] = None,
    max_images: int = 24,
) -> PageAnalysis:
    """Extract candidates from a saved page and rank the primary product's images.

    Caller-supplied anchors take precedence over the ones discovered in the page.
    """
    if not html or not html.strip():
        return PageAnalysis(status=STATUS_INVALID_INPUT, base_url=base_url, error_message="No document provided")
    if not base_url or not base_url.lower().startswith(('http://', 'https://')):
        return PageAnalysis(status=STATUS_INVALID_INPUT, base_url=base_url, error_message="An absolute http(s) base URL is required")

    extraction = extract_candidates(html, base_url, dims)
    found_anchors = list(anchors or []) or find_anchor_images(extraction.meta_image, extraction.candidates)
    analysis = PageAnalysis(
        status=STATUS_OK,
        base_url=base_url,
        product=extraction.product,
        context=extraction.context,
        candidates=extraction.candidates,
        anchors=found_anchors,
    )
    if not extraction.candidates:
        analysis.status = STATUS_NO_CANDIDATES
        logger.info(f"No image candidates found on {base_url}")
        return analysis

    analysis.ranked = select_primary_product_images(extraction.candidates, found_anchors, max_images)
    return analysis


def fallback_partition(ranked: Sequence[str], anchors: Sequence[str] = ()) -> BucketPartition:
    """First three ranked images confident, next three semi, the rest not confident.

    Ranked images matching an anchor are always confident.
    """
    urls = list(dict.fromkeys(ranked))
    anchor_keys = {normalize_for_dedupe(a) for a in anchors if a}
    head, tail = urls[:FALLBACK_CONFIDENT], urls[FALLBACK_CONFIDENT:]
    confident = head + [u for u in tail if normalize_for_dedupe(u) in anchor_keys]
    rest = [u for u in tail if normalize_for_dedupe(u) not in anchor_keys]
    return BucketPartition(
        confident=tuple(confident),
        semi_confident=tuple(rest[:FALLBACK_SEMI]),
        not_confident=tuple(rest[FALLBACK_SEMI:]),
    )


async def partition_urls(
    candidates: Sequence[ImageCandidate],
    anchors: Sequence[str],
    settings: PipelineSettings,
    fetcher=None,
    refiner=None,
    refine: bool = True,
    page_title: Optional[str] = None,
    context_text: Optional[str] = None,
    max_inline: Optional[int] = None,
) -> PartitionResult:
    return await partition_candidates(
        candidates,
        anchors,
        fetcher=fetcher or make_fetcher(settings),
        refiner=(refiner or make_refiner(settings)) if refine else None,
        thresholds=settings.thresholds,
        max_inline=settings.max_inline_images if max_inline is None else max_inline,
        page_title=page_title,
        context_text=context_text,
        batch_timeout=settings.batch_timeout_seconds,
        refine_timeout=settings.refine_timeout_seconds,
    )


async def partition_page(
    analysis: PageAnalysis,
    settings: PipelineSettings,
    fetcher=None,
    refiner=None,
    refine: bool = True,
) -> PartitionResult:
    """Bucket the ranked primary-product images of an analyzed page.

    A failed feature batch falls back to the ranked order and marks the result degraded.
    """
    if analysis.status != STATUS_OK or not analysis.ranked:
        return PartitionResult(
            status=STATUS_INVALID_INPUT,
            error_message=analysis.error_message or "Page has no ranked images to partition",
        )

    by_url: Dict[str, ImageCandidate] = {}
    for c in analysis.candidates:
        by_url.setdefault(c.url, c)
    ranked_candidates = [by_url.get(u) or ImageCandidate(url=u) for u in analysis.ranked]

    result = await partition_urls(
        ranked_candidates,
        analysis.anchors,
        settings,
        fetcher=fetcher,
        refiner=refiner,
        refine=refine,
        page_title=analysis.context.title,
        context_text=analysis.context.as_text(),
    )
    if result.status == STATUS_FEATURES_FAILED:
        logger.warning(f"Using ranked fallback layout for {analysis.base_url}: {result.error_message}")
        return PartitionResult(
            status=STATUS_OK,
            partition=fallback_partition(analysis.ranked, analysis.anchors),
            error_message=result.error_message,
            degraded=True,
            debug=result.debug,
        )
    return result
