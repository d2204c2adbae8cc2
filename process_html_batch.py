"""
Process saved product pages from a CSV file

This script reads saved page HTML listed in a CSV file, ranks each page's
primary product images and optionally splits them into confidence buckets.
One JSON line per page is written to the output file.

CSV Format (required columns):
- page_url: Original URL of the page (used to resolve relative image URLs)
- html_path: Path to the saved HTML (relative paths are resolved against the CSV's folder)
- title: Page title (optional)

Example CSV:
page_url,html_path,title
https://shop.example.com/p/123,pages/123.html,Linen shirt
https://shop.example.com/p/456,pages/456.html,
"""

import argparse
import asyncio
import csv
import json
import logging
import os
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional

import aiofiles
from dotenv import load_dotenv

from image_pipeline import PageAnalysis, analyze_page, make_fetcher, make_refiner, partition_page
from settings import PipelineSettings, log_level

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['page_url', 'html_path']


def read_csv_pages(csv_path: str) -> List[Dict[str, Any]]:
    """
    Read page rows from CSV file

    Args:
        csv_path: Path to CSV file

    Returns:
        List of page dictionaries with keys: page_url, html_path, title
    """
    pages = []
    base_dir = os.path.dirname(os.path.abspath(csv_path))

    with open(csv_path, 'r', encoding='utf-8', newline='') as f:
        reader = csv.DictReader(f)

        # Validate required columns
        fieldnames = reader.fieldnames or []
        if not all(col in fieldnames for col in REQUIRED_COLUMNS):
            raise ValueError(f"CSV must contain columns: {', '.join(REQUIRED_COLUMNS)}. Found: {', '.join(fieldnames)}")

        for row_num, row in enumerate(reader, start=2):  # Start at 2 (1 is header)
            page_url = (row.get('page_url') or '').strip()
            html_path = (row.get('html_path') or '').strip()
            title = (row.get('title') or '').strip() or None

            if not page_url:
                logger.warning(f"Row {row_num}: Missing page_url, skipping")
                continue
            if not html_path:
                logger.warning(f"Row {row_num}: Missing html_path, skipping")
                continue

            pages.append({
                'row': row_num,
                'page_url': page_url,
                'html_path': html_path if os.path.isabs(html_path) else os.path.join(base_dir, html_path),
                'title': title,
            })

    logger.info(f"Read {len(pages)} pages from CSV file: {csv_path}")
    return pages


def _analysis_record(page: Dict[str, Any], analysis: PageAnalysis) -> Dict[str, Any]:
    return {
        "page_url": page['page_url'],
        "title": page.get('title') or (analysis.context.title if analysis.context else None),
        "status": analysis.status,
        "error_message": analysis.error_message,
        "product": asdict(analysis.product) if analysis.product else None,
        "anchors": analysis.anchors,
        "candidates_found": len(analysis.candidates),
        "images": analysis.ranked,
    }


async def process_page(page: Dict[str, Any], settings: PipelineSettings, partition: bool, refine: bool,
                       fetcher=None, refiner=None) -> Optional[Dict[str, Any]]:
    """Analyze one saved page; returns None when the HTML file cannot be read."""
    try:
        async with aiofiles.open(page['html_path'], mode='r', encoding='utf-8', errors='replace') as f:
            html = await f.read()
    except OSError as e:
        logger.warning(f"Row {page['row']}: cannot read {page['html_path']}: {e}, skipping")
        return None

    analysis = analyze_page(html, page['page_url'], max_images=settings.max_return_images)
    record = _analysis_record(page, analysis)

    if partition and analysis.ranked:
        result = await partition_page(
            analysis,
            settings,
            fetcher=fetcher or make_fetcher(settings),
            refiner=refiner,
            refine=refine,
        )
        record['partition'] = {
            "status": result.status,
            "groups": result.partition.as_dict() if result.partition else None,
            "refined": result.refined,
            "degraded": result.degraded,
            "error_message": result.error_message,
        }
    return record


async def process_html_pages(pages: List[Dict[str, Any]], output_path: str, settings: PipelineSettings,
                             partition: bool = False, refine: bool = True, fetcher=None, refiner=None) -> int:
    """
    Process pages one by one and append a JSON line per page

    Returns:
        Number of records written
    """
    if not pages:
        logger.info("No pages to process.")
        return 0

    if partition and refine and refiner is None:
        refiner = make_refiner(settings)

    written = 0
    async with aiofiles.open(output_path, mode='w', encoding='utf-8') as out:
        for page in pages:
            try:
                record = await process_page(page, settings, partition, refine, fetcher=fetcher, refiner=refiner)
            except Exception as e:
                logger.exception(f"✗ Error processing row {page['row']} ({page['page_url']}): {e}")
                # Continue to next page instead of stopping
                continue
            if record is None:
                continue
            await out.write(json.dumps(record, ensure_ascii=False) + "\n")
            written += 1
            logger.info(f"✓ {page['page_url']}: {len(record['images'])} images")
    return written


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Rank and bucket product images from saved HTML pages listed in a CSV file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
CSV Format (required columns):
  - page_url: Original URL of the page
  - html_path: Path to the saved HTML file
  - title: Page title (optional)

Example CSV:
  page_url,html_path,title
  https://shop.example.com/p/123,pages/123.html,Linen shirt
        """
    )
    parser.add_argument(
        "csv_file",
        type=str,
        help="Path to CSV file listing the pages to process"
    )
    parser.add_argument(
        "--output",
        type=str,
        default="results.jsonl",
        help="Where to write one JSON line per page (default: results.jsonl)"
    )
    parser.add_argument(
        "--partition",
        action="store_true",
        help="Also split each page's images into confident / semiConfident / notConfident"
    )
    parser.add_argument(
        "--no-refine",
        action="store_true",
        help="Skip Gemini refinement of the buckets even when GEMINI_API_KEY is set"
    )
    parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Maximum ranked images per page (default: MAX_RETURN_IMAGES or 24)"
    )

    args = parser.parse_args(argv)

    # Load environment variables
    load_dotenv()

    logging.basicConfig(
        level=log_level(),
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    try:
        settings = PipelineSettings.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    if args.max_images:
        settings = replace(settings, max_return_images=max(1, args.max_images))

    # Check if CSV file exists
    if not os.path.exists(args.csv_file):
        logger.error(f"CSV file not found: {args.csv_file}")
        return 1

    try:
        pages = read_csv_pages(args.csv_file)
    except (ValueError, OSError, csv.Error) as e:
        logger.error(f"Error reading CSV file: {e}")
        return 1

    if not pages:
        logger.warning("No valid pages found in CSV file.")
        return 0

    written = asyncio.run(process_html_pages(
        pages,
        args.output,
        settings,
        partition=args.partition,
        refine=not args.no_refine,
    ))
    logger.info("=" * 60)
    logger.info(f"Batch complete: {written}/{len(pages)} pages written to {args.output}")
    logger.info("=" * 60)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
