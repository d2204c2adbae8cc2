# conftest.py
# Ensure the repository root is on sys.path so pytest can import the
# top-level modules (image_filter, vision, main, ...) directly.

import io
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest
from PIL import Image

# conftest is at: tests/conftest.py
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)

if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from vision import FeatureBatchError, features_from_bytes  # noqa: E402


def gradient_png(width: int = 90, height: int = 80, reverse: bool = False) -> bytes:
    """Horizontal gray gradient; ``reverse`` flips its direction (and every dHash bit)."""
    img = Image.new('RGB', (width, height))
    px = img.load()
    for x in range(width):
        v = int(255 * x / (width - 1))
        if reverse:
            v = 255 - v
        for y in range(height):
            px[x, y] = (v, v, v)
    buf = io.BytesIO()
    img.save(buf, 'PNG')
    return buf.getvalue()


def solid_png(color=(10, 200, 30), size=(64, 48)) -> bytes:
    buf = io.BytesIO()
    Image.new('RGB', size, color).save(buf, 'PNG')
    return buf.getvalue()


class FakeFetcher:
    """Stands in for ImageFeatureFetcher: serves in-memory bytes, never touches the network."""

    def __init__(self, images: Optional[Dict[str, bytes]] = None, fail: bool = False):
        self.images = images or {}
        self.fail = fail
        self.requested = []

    async def fetch_all(self, urls: Iterable[str], batch_timeout=None):
        urls = list(dict.fromkeys(urls))
        self.requested.extend(urls)
        if self.fail:
            raise FeatureBatchError("simulated batch timeout")
        return {u: (features_from_bytes(self.images[u]) if u in self.images else None) for u in urls}

    async def fetch_payloads(self, urls: Iterable[str]):
        return {u: (self.images[u], 'image/png') for u in urls if u in self.images}


ANCHOR = "https://shop.example.com/img/100200300/main.png"
SAME = "https://shop.example.com/img/100200300/side.png"
OTHER = "https://shop.example.com/img/900800700/main.png"
BROKEN = "https://shop.example.com/img/100200300/missing.png"


@pytest.fixture
def image_set() -> Dict[str, bytes]:
    anchor = gradient_png(reverse=True)
    return {
        ANCHOR: anchor,
        SAME: anchor,
        OTHER: gradient_png(reverse=False),
    }


@pytest.fixture
def fake_fetcher(image_set) -> FakeFetcher:
    return FakeFetcher(image_set)


PRODUCT_PAGE = """
<html><head>
<title>Linen Shirt | Shop</title>
<meta property="og:image" content="https://shop.example.com/media/123456789-p.jpg">
<meta property="og:title" content="Linen Shirt">
<meta name="description" content="A relaxed linen shirt.">
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [
  {"@type": "BreadcrumbList", "name": "crumbs"},
  {"@type": "Product", "name": "Linen Shirt", "description": "Relaxed fit",
   "brand": {"name": "Acme"}, "image": ["/media/123456789-p-2.jpg"],
   "offers": {"price": "1.299,00", "priceCurrency": "SEK"}}
]}
</script>
<script type="application/ld+json">{ not json</script>
<link rel="preload" as="image" href="/media/hero.webp">
</head><body>
<h1>Linen Shirt</h1>
<img src="/media/123456789-p.jpg?w=400"
     srcset="/media/123456789-p.jpg?w=800 800w, /media/123456789-p.jpg?w=1600 1600w"
     alt="front view" class="product-gallery__img" width="800" height="1000">
<img src="/icons/logo.svg" alt="logo">
<picture>
  <source srcset="/media/123456789-d.webp 1x, /media/123456789-d@2x.webp 2x">
  <img src="/media/123456789-d.jpg">
</picture>
<div style="background-image: url('/media/banner.jpg')"></div>
<a href="/media/123456789-zoom.png">zoom</a>
<div class="returns">Free returns within 30 days.</div>
</body></html>
"""

PRODUCT_PAGE_URL = "https://shop.example.com/p/linen-shirt"


@pytest.fixture
def product_page() -> str:
    return PRODUCT_PAGE
