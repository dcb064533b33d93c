import pytest

from feedcurator.errors import InvalidUrl
from feedcurator.extractor import extract_metadata, extract_page, validate_url

from conftest import ARTICLE_BODY, article_html


def test_validate_url():
    assert validate_url("  https://example.com/a  ") == "https://example.com/a"
    with pytest.raises(InvalidUrl):
        validate_url("ftp://example.com/file")
    with pytest.raises(InvalidUrl):
        validate_url("https://")
    with pytest.raises(InvalidUrl):
        validate_url("")


def test_extract_page_prefers_article_content():
    page = extract_page(article_html(), "https://example.com/a")
    assert page.title == "Storage engines"
    assert page.description == "A look inside storage engines"
    assert page.image == "https://example.com/cover.png"
    assert page.content == ARTICLE_BODY
    assert "Home" not in page.content
    assert "Copyright" not in page.content


def test_metadata_fallbacks():
    html = (
        '<html><head><meta name="twitter:title" content="Twitter title">'
        '<meta name="description" content="Plain description"></head>'
        "<body><p>x</p></body></html>"
    )
    metadata = extract_metadata(html, "https://example.com/a")
    assert metadata.title == "Twitter title"
    assert metadata.description == "Plain description"
    assert metadata.image is None


def test_title_falls_back_to_hostname():
    metadata = extract_metadata("<html><body></body></html>", "https://www.example.org/post")
    assert metadata.title == "example.org"


def test_title_and_description_are_truncated():
    html = (
        f"<html><head><title>{'T' * 300}</title>"
        f'<meta property="og:description" content="{"d" * 600}"></head></html>'
    )
    metadata = extract_metadata(html, "https://example.com", max_description_chars=500)
    assert len(metadata.title) == 255
    assert len(metadata.description) == 500


def test_short_readable_text_falls_back_to_body():
    html = (
        "<html><body><article>Tiny</article>"
        "<nav>Navigation text that is long enough to matter</nav></body></html>"
    )
    page = extract_page(html, "https://example.com", min_content_chars=20)
    assert "Navigation text" in page.content
