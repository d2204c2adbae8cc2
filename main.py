from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from dataclasses import asdict
from dotenv import load_dotenv
import logging
from typing import Dict, List, Optional, Tuple, Union

from bucket_partitioner import STATUS_FEATURES_FAILED, STATUS_INVALID_INPUT, PartitionResult
from image_filter import CandidateOrigin, ImageCandidate, finalize_image_candidates, score_image_candidate
from image_pipeline import PageAnalysis, analyze_page, make_fetcher, partition_urls
from settings import PipelineSettings, log_level

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=log_level(), format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Product Image Ranking API",
    description="API for discovering, ranking and bucketing a product page's images",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure this properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request models
class ExtractRequest(BaseModel):
    html: str
    base_url: str
    dims: Optional[Dict[str, Tuple[int, int]]] = None

class RankRequest(BaseModel):
    html: str
    base_url: str
    anchors: Optional[List[str]] = None
    max_images: Optional[int] = None

class CandidateIn(BaseModel):
    url: str
    origin: Optional[str] = None
    alt: Optional[str] = None
    class_tokens: Optional[str] = None
    pixel_area: Optional[int] = None

class PartitionRequest(BaseModel):
    anchors: List[str] = []
    candidates: List[Union[str, CandidateIn]]
    page_title: Optional[str] = None
    page_text: Optional[str] = None
    max_inline: Optional[int] = None
    refine: bool = True


def get_settings() -> PipelineSettings:
    try:
        return PipelineSettings.from_env()
    except ValueError as e:
        raise HTTPException(status_code=500, detail=f"Invalid configuration: {e}")


def get_fetcher(settings: PipelineSettings):
    return make_fetcher(settings)


def _to_candidate(item: Union[str, CandidateIn]) -> ImageCandidate:
    if isinstance(item, str):
        return ImageCandidate(url=item)
    try:
        origin = CandidateOrigin(item.origin) if item.origin else None
    except ValueError:
        origin = None
    return ImageCandidate(
        url=item.url,
        origin=origin,
        alt=item.alt,
        class_tokens=item.class_tokens,
        pixel_area=item.pixel_area if item.pixel_area and item.pixel_area > 0 else None,
    )


def _candidate_out(c: ImageCandidate) -> Dict:
    return {
        "url": c.url,
        "origin": c.origin.value if c.origin else None,
        "alt": c.alt,
        "class_tokens": c.class_tokens,
        "pixel_area": c.pixel_area,
        "score": score_image_candidate(c),
    }


def _raise_for_page(analysis: PageAnalysis) -> None:
    if analysis.status == STATUS_INVALID_INPUT:
        raise HTTPException(status_code=400, detail=analysis.error_message)


def _raise_for_partition(result: PartitionResult) -> None:
    if result.status == STATUS_INVALID_INPUT:
        raise HTTPException(status_code=400, detail=result.error_message)
    if result.status == STATUS_FEATURES_FAILED:
        raise HTTPException(status_code=503, detail=f"Image features unavailable: {result.error_message}")
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error_message or "Partition failed")


@app.get("/")
async def root():
    return {"message": "Product Image Ranking API is running"}

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    settings = get_settings()
    return {
        "status": "healthy",
        "refinement": "configured" if settings.refinement_configured else "disabled",
        "model": settings.gemini_model,
    }

@app.post("/extract-candidates")
async def extract_candidates_endpoint(request: ExtractRequest):
    """
    Extract image candidates, product details and anchors from page markup

    Args:
        request: ExtractRequest with the page HTML, its URL and optional measured sizes

    Returns:
        JSON response with candidates (and their heuristic scores), the unique
        candidate URLs ranked by score, and anchors
    """
    try:
        settings = get_settings()
        analysis = analyze_page(request.html, request.base_url, dims=request.dims)
        _raise_for_page(analysis)
        return {
            "status": analysis.status,
            "product": asdict(analysis.product) if analysis.product else None,
            "context": asdict(analysis.context),
            "candidates": [_candidate_out(c) for c in analysis.candidates],
            "by_score": finalize_image_candidates(analysis.candidates, settings.max_return_images),
            "anchors": analysis.anchors,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error extracting candidates for {request.base_url}: {e}")
        raise HTTPException(status_code=500, detail=f"Extraction failed: {str(e)}")

@app.post("/rank-images")
async def rank_images(request: RankRequest):
    """
    Ordered list of the primary product's images

    Args:
        request: RankRequest with the page HTML, its URL and optional trusted anchors

    Returns:
        JSON response with ranked image URLs
    """
    try:
        settings = get_settings()
        max_images = request.max_images or settings.max_return_images
        analysis = analyze_page(request.html, request.base_url, anchors=request.anchors, max_images=max_images)
        _raise_for_page(analysis)
        return {
            "status": analysis.status,
            "anchors": analysis.anchors,
            "images": analysis.ranked,
            "candidates_found": len(analysis.candidates),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error ranking images for {request.base_url}: {e}")
        raise HTTPException(status_code=500, detail=f"Ranking failed: {str(e)}")

@app.post("/partition-images")
async def partition_images(request: PartitionRequest):
    """
    Split candidate images into confident / semiConfident / notConfident buckets

    Args:
        request: PartitionRequest with anchors, candidates and optional page text

    Returns:
        JSON response with the three buckets and debug counters
    """
    try:
        settings = get_settings()
        result = await partition_urls(
            [_to_candidate(c) for c in request.candidates],
            request.anchors,
            settings,
            fetcher=get_fetcher(settings),
            refine=request.refine,
            page_title=request.page_title,
            context_text=request.page_text,
            max_inline=request.max_inline,
        )
        _raise_for_partition(result)
        return {
            "status": "success",
            "groups": result.partition.as_dict(),
            "refined": result.refined,
            "debug": result.debug,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Error partitioning images: {e}")
        raise HTTPException(status_code=500, detail=f"Partition failed: {str(e)}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
