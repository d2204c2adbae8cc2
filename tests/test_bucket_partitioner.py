"""Tests for the staged confidence-bucket partition and its invariants."""

import asyncio

import pytest

from bucket_partitioner import (
    STATUS_FEATURES_FAILED,
    STATUS_INVALID_INPUT,
    STATUS_OK,
    Bucket,
    BucketPartition,
    BucketThresholds,
    CandidateEvidence,
    apply_refinement,
    classify_candidate,
    enforce_invariants,
    order_buckets,
    partition_candidates,
)
from conftest import ANCHOR, BROKEN, OTHER, SAME, FakeFetcher
from image_cluster import ScoredCandidate
from image_filter import ImageCandidate, normalize_for_dedupe


def _evidence(url, distance=None, composite=0.3, editorial=False, packshot=False):
    return CandidateEvidence(
        scored=ScoredCandidate(candidate=ImageCandidate(url=url), score=0.0, perceptual_distance=distance),
        composite=composite,
        editorial=editorial,
        packshot=packshot,
    )


def _cands(*urls):
    return [ImageCandidate(url=u) for u in urls]


class StaticRefiner:
    def __init__(self, partition):
        self.partition = partition
        self.requests = []

    async def refine(self, request):
        self.requests.append(request)
        return self.partition


class FailingRefiner:
    async def refine(self, request):
        raise RuntimeError("service unavailable")


class SlowRefiner:
    async def refine(self, request):
        await asyncio.sleep(5)


# -----------------------------
# Thresholds & seeding
# -----------------------------

def test_thresholds_validate_tier_ordering():
    BucketThresholds()
    with pytest.raises(ValueError):
        BucketThresholds(confident_max_distance=30, semi_max_distance=22)
    with pytest.raises(ValueError):
        BucketThresholds(confident_min_composite=0.4, semi_min_composite=0.5)
    with pytest.raises(ValueError):
        BucketThresholds(promote_count=0)
    with pytest.raises(ValueError):
        BucketThresholds(semi_max_distance=70)


def test_seeding_rules():
    t = BucketThresholds()
    assert classify_candidate(_evidence("https://a.com/1.jpg", distance=5), t) is Bucket.CONFIDENT
    assert classify_candidate(_evidence("https://a.com/2.jpg", composite=0.75), t) is Bucket.CONFIDENT
    # editorial never seeds confident on distance alone
    assert classify_candidate(_evidence("https://a.com/3.jpg", distance=5, editorial=True), t) is Bucket.SEMI_CONFIDENT
    assert classify_candidate(_evidence("https://a.com/4-p.jpg", distance=15, packshot=True), t) is Bucket.CONFIDENT
    assert classify_candidate(_evidence("https://a.com/5.jpg", distance=20), t) is Bucket.SEMI_CONFIDENT
    assert classify_candidate(_evidence("https://a.com/6.jpg", composite=0.55), t) is Bucket.SEMI_CONFIDENT
    assert classify_candidate(_evidence("https://a.com/7.jpg", distance=40), t) is Bucket.NOT_CONFIDENT
    assert classify_candidate(_evidence("https://a.com/8.jpg"), t) is Bucket.NOT_CONFIDENT


# -----------------------------
# Merge & invariants
# -----------------------------

def test_apply_refinement_ignores_unknown_and_keeps_most_confident():
    known = ["https://a.com/1.jpg", "https://a.com/2.jpg"]
    refined = BucketPartition(
        confident=("https://a.com/2.jpg?w=800", "https://evil.com/new.jpg"),
        semi_confident=("https://a.com/2.jpg",),
        not_confident=("https://a.com/1.jpg",),
    )
    out = apply_refinement(known, refined)
    assert out == {"https://a.com/2.jpg": Bucket.CONFIDENT, "https://a.com/1.jpg": Bucket.NOT_CONFIDENT}


def test_enforce_invariants_fills_gaps_and_promotes():
    ev = [
        _evidence("https://a.com/1.jpg", distance=40, composite=0.2),
        _evidence("https://a.com/2.jpg", distance=30, composite=0.45),
        _evidence("https://a.com/3.jpg", distance=25, composite=0.45),
    ]
    debug = {}
    out = enforce_invariants(ev, {"https://a.com/1.jpg": Bucket.NOT_CONFIDENT}, [], BucketThresholds(), debug)
    assert set(out) == {e.url for e in ev}
    # 2 and 3 were missing -> semi, then the best two semi members promoted (distance breaks the tie)
    assert out["https://a.com/3.jpg"] is Bucket.CONFIDENT
    assert out["https://a.com/2.jpg"] is Bucket.CONFIDENT
    assert out["https://a.com/1.jpg"] is Bucket.NOT_CONFIDENT
    assert debug["missing_after_refine"] == 2
    assert debug["promoted"] == 2


def test_enforce_invariants_promotes_from_everything_when_semi_empty():
    ev = [_evidence("https://a.com/1.jpg", composite=0.1), _evidence("https://a.com/2.jpg", composite=0.2)]
    assignment = {e.url: Bucket.NOT_CONFIDENT for e in ev}
    out = enforce_invariants(ev, assignment, [], BucketThresholds(promote_count=1))
    assert out["https://a.com/2.jpg"] is Bucket.CONFIDENT
    assert out["https://a.com/1.jpg"] is Bucket.NOT_CONFIDENT


def test_order_buckets_by_composite_then_distance():
    ev = [
        _evidence("https://a.com/1.jpg", distance=10, composite=0.8),
        _evidence("https://a.com/2.jpg", distance=2, composite=0.8),
        _evidence("https://a.com/3.jpg", distance=None, composite=0.9),
    ]
    partition = order_buckets(ev, {e.url: Bucket.CONFIDENT for e in ev})
    assert partition.confident == ("https://a.com/3.jpg", "https://a.com/2.jpg", "https://a.com/1.jpg")


# -----------------------------
# End to end
# -----------------------------

@pytest.mark.asyncio
async def test_rule_based_partition(fake_fetcher):
    result = await partition_candidates(_cands(ANCHOR, SAME, OTHER, BROKEN), [ANCHOR], fetcher=fake_fetcher)
    assert result.status == STATUS_OK
    assert not result.refined
    assert result.partition.confident == (ANCHOR, SAME)
    assert set(result.partition.not_confident) == {OTHER, BROKEN}
    assert result.partition.semi_confident == ()
    assert result.debug["features_ok"] == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("urls", [
    [ANCHOR, SAME, OTHER, BROKEN],
    [ANCHOR + "?w=200", ANCHOR + "?w=1200", OTHER, OTHER + "#zoom", BROKEN],
    [BROKEN],
    [OTHER, BROKEN, SAME, "https://cdn.example.com/a/b.jpg", "https://cdn.example.com/a/b.jpg?q=70"],
])
async def test_partition_completeness(fake_fetcher, urls):
    result = await partition_candidates(_cands(*urls), [ANCHOR], fetcher=fake_fetcher)
    all_urls = result.partition.all_urls()
    assert len(all_urls) == len(set(all_urls))
    assert {normalize_for_dedupe(u) for u in all_urls} == {normalize_for_dedupe(u) for u in urls}
    assert len(all_urls) == len({normalize_for_dedupe(u) for u in urls})


@pytest.mark.asyncio
async def test_confident_never_empty_without_anchors():
    urls = [f"https://shop.example.com/img/{i}/x.png" for i in range(5)]
    result = await partition_candidates(_cands(*urls), [], fetcher=FakeFetcher())
    assert result.ok
    assert len(result.partition.confident) == 2
    assert len(result.partition.all_urls()) == 5


@pytest.mark.asyncio
async def test_anchor_is_forced_into_confident(fake_fetcher):
    editorial_anchor = "https://shop.example.com/lookbook/campaign-e1.jpg"
    result = await partition_candidates(
        _cands(editorial_anchor, SAME, OTHER),
        [editorial_anchor],
        fetcher=fake_fetcher,
    )
    assert editorial_anchor in result.partition.confident
    assert result.debug["anchors_forced"] == 1


@pytest.mark.asyncio
async def test_refinement_merge_respects_invariants(fake_fetcher):
    refiner = StaticRefiner(BucketPartition(
        confident=(OTHER, "https://unknown.example.com/x.jpg"),
        semi_confident=(),
        not_confident=(ANCHOR, SAME),
    ))
    result = await partition_candidates(
        _cands(ANCHOR, SAME, OTHER, BROKEN),
        [ANCHOR],
        fetcher=fake_fetcher,
        refiner=refiner,
        page_title="Linen Shirt",
        context_text="x" * 5000,
    )
    assert result.refined
    assert result.partition.confident == (ANCHOR, OTHER)
    assert result.partition.semi_confident == (BROKEN,)
    assert result.partition.not_confident == (SAME,)
    assert "https://unknown.example.com/x.jpg" not in result.partition.all_urls()
    assert result.debug["missing_after_refine"] == 1

    request = refiner.requests[0]
    assert request.anchors == [ANCHOR]
    assert [m.url for m in request.manifest] == [ANCHOR, SAME, OTHER, BROKEN]
    assert request.manifest[0].to_dict()["bucket"] == "confident"
    assert [img.url for img in request.anchor_images] == [ANCHOR]
    assert len(request.context_text) == 1600


@pytest.mark.asyncio
@pytest.mark.parametrize("refiner", [FailingRefiner(), SlowRefiner(), StaticRefiner(None)])
async def test_refinement_failure_keeps_seeded_partition(fake_fetcher, refiner):
    cands = _cands(ANCHOR, SAME, OTHER, BROKEN)
    seeded = await partition_candidates(cands, [ANCHOR], fetcher=fake_fetcher)
    degraded = await partition_candidates(cands, [ANCHOR], fetcher=fake_fetcher, refiner=refiner, refine_timeout=0.05)
    assert degraded.status == STATUS_OK
    assert not degraded.refined
    assert degraded.partition == seeded.partition


@pytest.mark.asyncio
async def test_invalid_input_is_distinct_from_empty_result():
    result = await partition_candidates([], [ANCHOR], fetcher=FakeFetcher())
    assert result.status == STATUS_INVALID_INPUT
    assert result.partition is None
    relative = await partition_candidates(_cands("/img/a.jpg", "b.png"), [], fetcher=FakeFetcher())
    assert relative.status == STATUS_INVALID_INPUT


@pytest.mark.asyncio
async def test_feature_batch_failure_is_reported():
    result = await partition_candidates(_cands(ANCHOR, SAME), [ANCHOR], fetcher=FakeFetcher(fail=True))
    assert result.status == STATUS_FEATURES_FAILED
    assert result.partition is None
    assert "timeout" in result.error_message
