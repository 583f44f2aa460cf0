import io
import logging
import re
from dataclasses import dataclass

import fitz  # PyMuPDF
import pikepdf

from .config import LibraryConfig
from .errors import ExtractionFailure
from .models import MetadataSource, PartialMetadata
from .utils import extract_doi, normalize_author_name, normalize_doi

logger = logging.getLogger(__name__)

# Titles that authoring tools write into the info dictionary on their own.
JUNK_TITLE_PATTERNS = (
    re.compile(r"^microsoft (word|powerpoint)\s*-", re.IGNORECASE),
    re.compile(r"\.(pdf|docx?|tex|dvi|ps)$", re.IGNORECASE),
    re.compile(r"^(untitled|title|document|none|unknown)\d*$", re.IGNORECASE),
)

ABSTRACT_HEADING = re.compile(r"\babstract\b[\s.:\u2014-]*", re.IGNORECASE)
ABSTRACT_END = re.compile(
    r"\n\s*(keywords|key words|index terms|1\.?\s+introduction|introduction)\b", re.IGNORECASE
)
MAX_ABSTRACT_CHARS = 3000


@dataclass
class PdfExtraction:
    """Result of reading a PDF: structured metadata plus the page text used for analysis."""
    partial: PartialMetadata
    text: str


def is_junk_title(title: str | None) -> bool:
    if not title or len(title.strip()) < 4:
        return True
    return any(p.search(title.strip()) for p in JUNK_TITLE_PATTERNS)


def split_author_string(value: str | None) -> list[str]:
    """Splits an info-dictionary ``/Author`` value on ``;`` or `` and ``."""
    if not value:
        return []
    parts = re.split(r";|\s+and\s+|&", value)
    return [normalize_author_name(p) for p in parts if p.strip()]


def guess_abstract(text: str) -> str:
    """Takes the paragraph after an "Abstract" heading on the first pages, if there is one."""
    match = ABSTRACT_HEADING.search(text)
    if not match:
        return ""
    rest = text[match.end():]
    end = ABSTRACT_END.search(rest)
    abstract = rest[:end.start()] if end else rest[:MAX_ABSTRACT_CHARS]
    abstract = re.sub(r"--- Page \d+ ---", " ", abstract)
    abstract = re.sub(r"\s+", " ", abstract).strip()
    return abstract[:MAX_ABSTRACT_CHARS] if len(abstract) >= 50 else ""


def _year_from(value) -> int | None:
    if not value:
        return None
    match = re.search(r"(19|20)\d{2}", str(value))
    return int(match.group(0)) if match else None


class PdfExtractor:
    """PDF adapter: page text through PyMuPDF, document metadata through pikepdf."""

    def __init__(self, config: LibraryConfig):
        self.max_pages = config.max_pdf_pages

    def extract_text(self, payload: bytes) -> str:
        """Plain text of the first ``max_pages`` pages, each under a ``--- Page N ---`` header."""
        if not payload:
            raise ExtractionFailure("PDF payload is empty")
        try:
            with fitz.open(stream=payload, filetype="pdf") as doc:
                if doc.needs_pass:
                    raise ExtractionFailure("PDF is encrypted")
                chunks = []
                for index in range(min(self.max_pages, doc.page_count)):
                    page_text = doc[index].get_text()
                    chunks.append(f"--- Page {index + 1} ---\n{page_text}\n\n")
        except (fitz.FileDataError, RuntimeError, ValueError) as e:
            raise ExtractionFailure(f"Not a readable PDF: {e}") from e

        text = "".join(chunks)
        if not re.sub(r"--- Page \d+ ---", "", text).strip():
            raise ExtractionFailure("PDF has no extractable text")
        return text

    def read_metadata(self, payload: bytes) -> dict:
        """Document-level metadata from the XMP packet, falling back to the info dictionary.

        Metadata problems are not fatal: a PDF whose text reads fine but whose
        metadata does not just yields an empty dict.
        """
        found = {}
        try:
            with pikepdf.open(io.BytesIO(payload)) as pdf:
                docinfo = {str(k): str(v) for k, v in pdf.docinfo.items()}
                with pdf.open_metadata(set_pikepdf_as_editor=False, update_docinfo=False) as meta:
                    xmp = {key: meta.get(key) for key in (
                        "dc:title", "dc:creator", "dc:description", "dc:date",
                        "prism:doi", "prism:publicationName", "prism:coverDate",
                        "prism:publicationDate", "prism:volume", "prism:number",
                        "prism:startingPage", "prism:endingPage",
                    )}
        except (pikepdf.PdfError, ValueError, OSError) as e:
            logger.warning("Could not read PDF metadata: %s", e)
            return found

        title = xmp.get("dc:title") or docinfo.get("/Title")
        if not is_junk_title(title):
            found["title"] = str(title).strip()

        creators = xmp.get("dc:creator")
        if creators:
            if isinstance(creators, str):
                creators = [creators]
            found["authors"] = [a for c in creators for a in split_author_string(str(c))]
        elif docinfo.get("/Author"):
            found["authors"] = split_author_string(docinfo["/Author"])

        year = None
        for key in ("prism:publicationDate", "prism:coverDate", "dc:date"):
            year = _year_from(xmp.get(key))
            if year:
                break
        if year:
            found["year"] = year

        if xmp.get("prism:doi"):
            found["doi"] = normalize_doi(str(xmp["prism:doi"]))
        if xmp.get("prism:publicationName"):
            found["journal"] = str(xmp["prism:publicationName"]).strip()
        if xmp.get("prism:volume"):
            found["volume"] = str(xmp["prism:volume"])
        if xmp.get("prism:number"):
            found["issue"] = str(xmp["prism:number"])
        if xmp.get("prism:startingPage"):
            pages = str(xmp["prism:startingPage"])
            if xmp.get("prism:endingPage"):
                pages += f"-{xmp['prism:endingPage']}"
            found["pages"] = pages

        description = xmp.get("dc:description")
        if description and len(str(description)) >= 100:
            found["abstract"] = str(description)
        return found

    def fetch(self, payload: bytes) -> PdfExtraction:
        text = self.extract_text(payload)
        found = self.read_metadata(payload)

        if "doi" not in found:
            doi = extract_doi(text)
            if doi:
                found["doi"] = doi
        if "abstract" not in found:
            abstract = guess_abstract(text)
            if abstract:
                found["abstract"] = abstract

        logger.info("Extracted %d characters and %d metadata field(s) from PDF", len(text), len(found))
        return PdfExtraction(partial=PartialMetadata(source=MetadataSource.PDF, **found), text=text)
