import pytest

from reflib.errors import ExtractionFailure
from reflib.models import MetadataSource
from reflib.pdf_extractor import PdfExtractor, guess_abstract, is_junk_title, split_author_string


@pytest.fixture
def extractor(config):
    return PdfExtractor(config)


def test_text_and_metadata(extractor, make_pdf):
    payload = make_pdf(
        pages=["Deep Things\nAbstract\nWe study deep things at considerable length and report results.\n"
               "Introduction\ndoi:10.1234/deep.5678.", "Second page"],
        metadata={"title": "Deep Things", "author": "Jane Doe; John Smith"},
    )
    extraction = extractor.fetch(payload)

    assert extraction.partial.source is MetadataSource.PDF
    assert extraction.partial.title == "Deep Things"
    assert extraction.partial.authors == ["Doe, Jane", "Smith, John"]
    assert extraction.partial.doi == "10.1234/deep.5678"
    assert "considerable length" in extraction.partial.abstract
    assert extraction.text.startswith("--- Page 1 ---\n")
    assert "--- Page 2 ---\nSecond page" in extraction.text


def test_text_without_metadata_is_success(extractor, make_pdf):
    extraction = extractor.fetch(make_pdf(pages=["Just some words"]))
    assert extraction.partial.title is None
    assert extraction.partial.authors is None
    assert "Just some words" in extraction.text


def test_only_first_pages_are_read(config, make_pdf):
    extractor = PdfExtractor(config.with_overrides(max_pdf_pages=2))
    text = extractor.extract_text(make_pdf(pages=["one", "two", "three"]))
    assert "--- Page 2 ---" in text
    assert "three" not in text


@pytest.mark.parametrize("payload", [b"", b"this is not a pdf at all"])
def test_unparseable_payload(extractor, payload):
    with pytest.raises(ExtractionFailure) as excinfo:
        extractor.fetch(payload)
    assert excinfo.value.user_message == "Could not read PDF"


def test_pdf_without_text(extractor, make_pdf):
    with pytest.raises(ExtractionFailure):
        extractor.fetch(make_pdf(pages=[""]))


@pytest.mark.parametrize("title, junk", [
    ("Microsoft Word - draft3.docx", True),
    ("paper_final.pdf", True),
    ("untitled", True),
    ("", True),
    (None, True),
    ("Attention Is All You Need", False),
])
def test_is_junk_title(title, junk):
    assert is_junk_title(title) is junk


def test_split_author_string():
    assert split_author_string("Jane Doe and John Smith") == ["Doe, Jane", "Smith, John"]
    assert split_author_string("Doe, Jane; Smith, John") == ["Doe, Jane", "Smith, John"]
    assert split_author_string(None) == []


def test_guess_abstract_requires_heading():
    assert guess_abstract("No heading in this text at all.") == ""
    text = "Title\nABSTRACT: " + "word " * 20 + "\nKeywords: a, b"
    assert guess_abstract(text) == ("word " * 20).strip()
