"""Tests for the CSV batch command."""

import json

import pytest

from conftest import PRODUCT_PAGE, FakeFetcher
from process_html_batch import main, process_html_pages, read_csv_pages
from settings import PipelineSettings


@pytest.fixture
def pages_dir(tmp_path, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    (tmp_path / "pages").mkdir()
    (tmp_path / "pages" / "shirt.html").write_text(PRODUCT_PAGE, encoding="utf-8")
    (tmp_path / "pages" / "empty.html").write_text("<html><body>sold out</body></html>", encoding="utf-8")
    csv_path = tmp_path / "pages.csv"
    csv_path.write_text(
        "page_url,html_path,title\n"
        "https://shop.example.com/p/linen-shirt,pages/shirt.html,Linen shirt\n"
        ",pages/shirt.html,no url\n"
        "https://shop.example.com/p/gone,pages/missing.html,\n"
        "https://shop.example.com/p/empty,pages/empty.html,\n",
        encoding="utf-8",
    )
    return tmp_path


def test_read_csv_pages_skips_bad_rows(pages_dir):
    pages = read_csv_pages(str(pages_dir / "pages.csv"))
    assert [p['row'] for p in pages] == [2, 4, 5]
    assert pages[0]['html_path'] == str(pages_dir / "pages" / "shirt.html")
    assert pages[0]['title'] == "Linen shirt"
    assert pages[1]['title'] is None


def test_read_csv_pages_requires_columns(tmp_path):
    bad = tmp_path / "bad.csv"
    bad.write_text("url,file\nhttps://a.com,a.html\n", encoding="utf-8")
    with pytest.raises(ValueError):
        read_csv_pages(str(bad))


def test_main_writes_one_line_per_readable_page(pages_dir):
    output = pages_dir / "out.jsonl"
    assert main([str(pages_dir / "pages.csv"), "--output", str(output), "--max-images", "5"]) == 0

    records = [json.loads(line) for line in output.read_text(encoding="utf-8").splitlines()]
    assert [r['page_url'] for r in records] == [
        "https://shop.example.com/p/linen-shirt",
        "https://shop.example.com/p/empty",
    ]
    shirt, empty = records
    assert shirt['status'] == "OK"
    assert shirt['images'][0] == "https://shop.example.com/media/123456789-p.jpg?w=1600"
    assert len(shirt['images']) <= 5
    assert 'partition' not in shirt
    assert empty['status'] == "NO_CANDIDATES"
    assert empty['images'] == []


def test_main_missing_csv(tmp_path):
    assert main([str(tmp_path / "nope.csv")]) == 1


@pytest.mark.asyncio
async def test_partition_degrades_when_features_fail(pages_dir):
    pages = read_csv_pages(str(pages_dir / "pages.csv"))
    output = pages_dir / "partitioned.jsonl"
    written = await process_html_pages(
        pages, str(output), PipelineSettings(), partition=True, fetcher=FakeFetcher(fail=True),
    )
    assert written == 2
    shirt = json.loads(output.read_text(encoding="utf-8").splitlines()[0])
    assert shirt['partition']['status'] == "OK"
    assert shirt['partition']['degraded'] is True
    groups = shirt['partition']['groups']
    assert groups['confident'][:3] == shirt['images'][:3]
    assert sum(len(v) for v in groups.values()) == len(shirt['images'])
