"""
Gemini-backed refinement of the image buckets

Sends the anchors, a compact candidate manifest and a few inline images to
Gemini and reads back a three-bucket partition. Anything the model returns is
only a suggestion: the partitioner merges it under its own invariants.
"""

import os
import json
import logging
from typing import Any, Dict, List, Optional

import google.generativeai as genai

from bucket_partitioner import (
    BUCKET_ORDER,
    BucketPartition,
    MAX_CONTEXT_CHARS,
    RefinementError,
    RefinementRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'gemini-2.5-flash'


def build_prompt_header(page_title: Optional[str], context_text: Optional[str]) -> str:
    ctx = (context_text or "")[:MAX_CONTEXT_CHARS]
    return f"""
IMAGE BUCKETING TASK

Assign EVERY candidate image to one of three buckets with respect to the SAME focal product shown in the ANCHOR images.

BUCKETS:
- "confident": more images of the SAME product (packshot, other angle, close-up of the same item).
- "semiConfident": likely the same item but uncertain (lighting, pose, crop, partial view).
- "notConfident": different product, color, print or fabric, editorial banners, or unverifiable.

PRODUCT TEXT:
Title: {page_title or "(unknown)"}
Text: {ctx or "(none provided)"}

CUES IN THE CANDIDATE LIST:
- perceptualDistance: dHash Hamming distance vs anchors (0-64, lower is more similar, null when unavailable).
- colorSimilarity: 0-1 similarity to the average anchor color.
- anchorSimilarity: 0-1 URL-token overlap with the anchors.
- composite: 0-1 blend of the cues above; bucket is the provisional rule-based bucket.

RULES:
- Identical or near-duplicate of an ANCHOR goes to "confident".
- Borderline goes to "semiConfident"; clear mismatches to "notConfident".
- Editorial with a person is acceptable ONLY if the focal garment is clearly the same item.
- Include ALL candidates in exactly one bucket; do not drop any and do not invent URLs.

RESPONSE FORMAT:
Return JSON ONLY:
{{"groups":{{"confident":[urls...],"semiConfident":[urls...],"notConfident":[urls...]}}}}
""".strip()


def _compact(v: Any) -> Any:
    return round(v, 3) if isinstance(v, float) else v


def build_candidate_list(request: RefinementRequest) -> str:
    """One line per candidate: its id and URL, then the manifest cues as JSON."""
    lines = [f"Candidates ({len(request.manifest)}):"]
    for i, m in enumerate(request.manifest, start=1):
        cues = {k: _compact(v) for k, v in m.to_dict().items() if k != "url"}
        lines.append(f"C{i}: {m.url}\n  {json.dumps(cues)}")
    return "\n".join(lines)


def build_prompt_parts(request: RefinementRequest) -> List[Any]:
    """Header, labelled inline images (anchors first), then the full candidate list."""
    parts: List[Any] = [build_prompt_header(request.page_title, request.context_text)]
    for img in request.anchor_images:
        parts.append("ANCHOR")
        parts.append({'mime_type': img.mime_type, 'data': img.data})
    ids = {m.url: f"C{i}" for i, m in enumerate(request.manifest, start=1)}
    for img in request.inline_images:
        parts.append(f"CANDIDATE {ids.get(img.url, '?')} {img.url}")
        parts.append({'mime_type': img.mime_type, 'data': img.data})
    parts.append(build_candidate_list(request))
    return parts


def strip_code_fences(content: str) -> str:
    content = content.strip()
    if content.startswith('```json'):
        content = content[7:]
    elif content.startswith('```'):
        content = content[3:]
    if content.endswith('```'):
        content = content[:-3]
    return content.strip()


def parse_refinement_response(content: str) -> BucketPartition:
    """Read ``{"groups": {...}}`` (or the three keys at top level) into a partition."""
    try:
        parsed = json.loads(strip_code_fences(content or ""))
    except json.JSONDecodeError as e:
        raise RefinementError(f"Refinement response is not JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise RefinementError("Refinement response is not a JSON object")

    groups = parsed.get("groups", parsed)
    if not isinstance(groups, dict) or not any(b.value in groups for b in BUCKET_ORDER):
        raise RefinementError("Refinement response has no bucket groups")

    clean: Dict[str, List[str]] = {}
    for b in BUCKET_ORDER:
        urls = groups.get(b.value) or []
        if not isinstance(urls, list):
            raise RefinementError(f"Bucket {b.value} is not a list")
        clean[b.value] = [u for u in urls if isinstance(u, str)]
    return BucketPartition.from_groups(clean)


class GeminiRefiner:
    """Refinement collaborator backed by a Gemini multimodal model"""

    def __init__(self, api_key: Optional[str] = None, model_name: str = DEFAULT_MODEL):
        self.api_key = api_key or os.getenv('GEMINI_API_KEY')
        self.model_name = model_name
        if self.api_key:
            genai.configure(api_key=self.api_key)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def refine(self, request: RefinementRequest) -> BucketPartition:
        if not self.api_key:
            raise RefinementError("GEMINI_API_KEY not configured")

        model = genai.GenerativeModel(self.model_name)
        parts = build_prompt_parts(request)
        logger.info(
            f"Refining {len(request.manifest)} candidates with {self.model_name} "
            f"({len(request.anchor_images) + len(request.inline_images)} inline images)"
        )
        response = await model.generate_content_async(
            parts,
            generation_config={'response_mime_type': 'application/json'},
        )
        try:
            content = response.text
        except ValueError as e:
            # blocked or empty candidates
            raise RefinementError(f"Gemini returned no text: {e}") from e
        if not content:
            raise RefinementError("Gemini returned no text content")
        return parse_refinement_response(content)
