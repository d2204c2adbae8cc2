"""
Vision utilities

Perceptual hash (dHash via imagehash) and color statistics computed with Pillow,
plus bounded concurrent fetching of image bytes with aiohttp. A failed fetch or
decode only marks that one image as "features unavailable".
"""

import io
import re
import math
import base64
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse, unquote_to_bytes

import aiohttp
import imagehash
from PIL import Image, ImageStat

logger = logging.getLogger(__name__)

HASH_BITS = 64
MAX_COLOR_DISTANCE = math.sqrt(3 * 255 ** 2)  # ~441.673
MAX_IMAGE_BYTES = 20 * 1024 * 1024
INLINE_MAX_BYTES = 5 * 1024 * 1024

# Neutral values used when an image's pixels could not be fetched
DEFAULT_DISTANCE = 48
DEFAULT_COLOR_SIMILARITY = 0.5
DEFAULT_RESOLUTION = 0.5

EDITORIAL_URL_RE = re.compile(r"-e\d*(?:[./_-]|$)|editorial|lookbook|campaign|lifestyle", re.I)
PACKSHOT_URL_RE = re.compile(r"-p(?:[./_-]|$)|packshot", re.I)

BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    'Accept': 'image/jpeg,image/png,image/webp;q=0.9,image/*;q=0.1,*/*;q=0.1',
    'Accept-Language': 'en-US,en;q=0.9',
}


class FeatureBatchError(Exception):
    """The feature batch as a whole did not complete (timeout or cancellation)."""


@dataclass(frozen=True)
class ImageFeatures:
    width: int
    height: int
    dhash: imagehash.ImageHash
    mean_color: Tuple[int, int, int]
    byte_size: int


# -----------------------------
# Hashing & color
# -----------------------------

def compute_dhash(image: Image.Image) -> imagehash.ImageHash:
    """64-bit difference hash over a 9x8 grayscale grid."""
    return imagehash.dhash(image, hash_size=8)


def mean_color(image: Image.Image) -> Tuple[int, int, int]:
    stat = ImageStat.Stat(image.convert('RGB'))
    r, g, b = (int(round(m)) for m in stat.mean[:3])
    return r, g, b


def features_from_bytes(data: bytes) -> ImageFeatures:
    """Decode and describe one image. Raises OSError/ValueError on undecodable data."""
    with Image.open(io.BytesIO(data)) as image:
        image.load()
        width, height = image.size
        return ImageFeatures(
            width=width,
            height=height,
            dhash=compute_dhash(image),
            mean_color=mean_color(image),
            byte_size=len(data),
        )


def hamming_distance(a: imagehash.ImageHash, b: imagehash.ImageHash) -> int:
    return int(a - b)


def min_distance_to_anchors(h: imagehash.ImageHash, anchor_hashes: Sequence[imagehash.ImageHash]) -> int:
    if not anchor_hashes:
        return HASH_BITS
    return min(hamming_distance(h, a) for a in anchor_hashes)


def color_distance(a: Tuple[int, int, int], b: Tuple[float, float, float]) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def average_color(colors: Iterable[Tuple[int, int, int]]) -> Optional[Tuple[float, float, float]]:
    colors = list(colors)
    if not colors:
        return None
    n = len(colors)
    return (
        sum(c[0] for c in colors) / n,
        sum(c[1] for c in colors) / n,
        sum(c[2] for c in colors) / n,
    )


def color_similarity(color: Tuple[int, int, int], anchor_mean: Optional[Tuple[float, float, float]]) -> Optional[float]:
    if anchor_mean is None:
        return None
    sim = 1.0 - color_distance(color, anchor_mean) / MAX_COLOR_DISTANCE
    return max(0.0, min(1.0, sim))


# -----------------------------
# Composite score
# -----------------------------

def resolution_score(width: int, height: int) -> float:
    """Shortest edge relative to 800px, halved for banner-like aspect ratios."""
    if width <= 0 or height <= 0:
        return 0.0
    score = min(1.0, min(width, height) / 800)
    if max(width, height) / min(width, height) > 2.5:
        score *= 0.5
    return score


def is_editorial_url(u: str) -> bool:
    return bool(EDITORIAL_URL_RE.search(u))


def is_packshot_url(u: str) -> bool:
    return bool(PACKSHOT_URL_RE.search(u))


def composite_score(
    url: str,
    distance: Optional[int],
    color_sim: Optional[float],
    resolution: Optional[float],
    anchor_similarity: float = 0.0,
) -> float:
    """Weighted blend in [0, 1]; missing pixel features use neutral defaults."""
    d = DEFAULT_DISTANCE if distance is None else distance
    c = DEFAULT_COLOR_SIMILARITY if color_sim is None else color_sim
    r = DEFAULT_RESOLUTION if resolution is None else resolution
    score = 0.50 * (1 - d / HASH_BITS) + 0.20 * c + 0.10 * r + 0.10 * anchor_similarity
    if is_packshot_url(url):
        score += 0.10
    if is_editorial_url(url):
        score -= 0.15
    return max(0.0, min(1.0, score))


# -----------------------------
# Fetching
# -----------------------------

def decode_data_url(u: str) -> Optional[bytes]:
    header, sep, payload = u.partition(',')
    if not sep or not header.lower().startswith('data:image/'):
        return None
    if header.lower().startswith('data:image/svg'):
        return None
    try:
        if ';base64' in header.lower():
            return base64.b64decode(payload)
        return unquote_to_bytes(payload)
    except ValueError:
        return None


class ImageFeatureFetcher:
    """Fetch and describe many images concurrently, bounded by a semaphore."""

    def __init__(self, concurrency: int = 12, timeout_seconds: float = 15.0, max_bytes: int = MAX_IMAGE_BYTES):
        self.concurrency = max(1, concurrency)
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max_bytes

    async def fetch_bytes(self, session: aiohttp.ClientSession, url: str) -> Optional[bytes]:
        if url.lower().startswith('data:'):
            return decode_data_url(url)
        pu = urlparse(url)
        referer = f"{pu.scheme}://{pu.netloc}/"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with session.get(url, timeout=timeout, headers={'Referer': referer}) as response:
            if response.status < 200 or response.status >= 300:
                logger.warning(f"Image fetch returned HTTP {response.status} for {url}")
                return None
            ct = (response.headers.get('Content-Type') or '').lower()
            if not ct.startswith('image/'):
                logger.warning(f"Not an image ({ct or 'no content type'}): {url}")
                return None
            # Formats Pillow can't open by default
            if 'image/avif' in ct or 'image/svg' in ct:
                return None
            if response.content_length and response.content_length > self.max_bytes:
                logger.warning(f"Image too large ({response.content_length} bytes): {url}")
                return None
            # stop reading as soon as the body passes the limit
            data = bytearray()
            async for chunk in response.content.iter_chunked(64 * 1024):
                data.extend(chunk)
                if len(data) > self.max_bytes:
                    logger.warning(f"Image too large (over {self.max_bytes} bytes): {url}")
                    return None
            return bytes(data)

    async def fetch_features(self, session: aiohttp.ClientSession, semaphore: asyncio.Semaphore, url: str) -> Optional[ImageFeatures]:
        async with semaphore:
            try:
                data = await self.fetch_bytes(session, url)
                if not data:
                    return None
                return features_from_bytes(data)
            except (asyncio.TimeoutError, aiohttp.ClientError, OSError, ValueError, Image.DecompressionBombError) as e:
                logger.warning(f"Features unavailable for {url[:120]}: {e}")
                return None

    async def fetch_payload(self, session: aiohttp.ClientSession, semaphore: asyncio.Semaphore, url: str) -> Optional[Tuple[bytes, str]]:
        """Raw bytes plus MIME type, for sending an image inline to a model."""
        async with semaphore:
            try:
                data = await self.fetch_bytes(session, url)
                if not data or len(data) > INLINE_MAX_BYTES:
                    return None
                with Image.open(io.BytesIO(data)) as image:
                    mime = Image.MIME.get(image.format or '')
                return (data, mime) if mime else None
            except (asyncio.TimeoutError, aiohttp.ClientError, OSError, ValueError, Image.DecompressionBombError) as e:
                logger.warning(f"Inline payload unavailable for {url[:120]}: {e}")
                return None

    async def fetch_payloads(self, urls: Iterable[str]) -> Dict[str, Optional[Tuple[bytes, str]]]:
        unique: List[str] = list(dict.fromkeys(u for u in urls if u))
        if not unique:
            return {}
        semaphore = asyncio.Semaphore(self.concurrency)
        async with aiohttp.ClientSession(headers=BROWSER_HEADERS) as session:
            results = await asyncio.gather(*[self.fetch_payload(session, semaphore, u) for u in unique])
        return dict(zip(unique, results))

    async def fetch_all(self, urls: Iterable[str], batch_timeout: Optional[float] = None) -> Dict[str, Optional[ImageFeatures]]:
        """Features per unique URL; ``None`` marks an image whose features are unavailable.

        Raises FeatureBatchError when the whole batch times out.
        """
        unique: List[str] = list(dict.fromkeys(u for u in urls if u))
        if not unique:
            return {}
        semaphore = asyncio.Semaphore(self.concurrency)
        async with aiohttp.ClientSession(headers=BROWSER_HEADERS) as session:
            tasks = [self.fetch_features(session, semaphore, u) for u in unique]
            try:
                results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=batch_timeout)
            except asyncio.TimeoutError as e:
                raise FeatureBatchError(f"Feature batch of {len(unique)} images timed out after {batch_timeout}s") from e
        ok = sum(1 for r in results if r is not None)
        logger.info(f"Computed features for {ok}/{len(unique)} images")
        return dict(zip(unique, results))
