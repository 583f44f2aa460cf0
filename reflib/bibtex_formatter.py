import logging
import re

import bibtexparser
from bibtexparser.middlewares import SeparateCoAuthors
from bibtexparser.model import Entry, Field

from .models import MetadataSource, PartialMetadata, Reference, ReferenceType
from .utils import derive_citation_key, family_name

logger = logging.getLogger(__name__)

ENTRY_TYPE_MAP = {
    ReferenceType.JOURNAL_ARTICLE: "article",
    ReferenceType.CONFERENCE_PAPER: "inproceedings",
    ReferenceType.BOOK_CHAPTER: "inbook",
    ReferenceType.BOOK: "book",
    ReferenceType.THESIS: "phdthesis",
    ReferenceType.TECHNICAL_REPORT: "techreport",
    ReferenceType.PREPRINT: "misc",
}
DEFAULT_ENTRY_TYPE = "article"

# Reading .bib files accepts a few more entry types than we write.
IMPORT_TYPE_MAP = {
    "article": ReferenceType.JOURNAL_ARTICLE,
    "inproceedings": ReferenceType.CONFERENCE_PAPER,
    "conference": ReferenceType.CONFERENCE_PAPER,
    "inbook": ReferenceType.BOOK_CHAPTER,
    "incollection": ReferenceType.BOOK_CHAPTER,
    "book": ReferenceType.BOOK,
    "phdthesis": ReferenceType.THESIS,
    "mastersthesis": ReferenceType.THESIS,
    "techreport": ReferenceType.TECHNICAL_REPORT,
    "unpublished": ReferenceType.PREPRINT,
}

# Output order. Each pair is (bibtex field, Reference attribute).
FIELD_ORDER = (
    ("title", "title"),
    ("author", "authors"),
    ("editor", "editors"),
    ("journal", "journal"),
    ("year", "year"),
    ("volume", "volume"),
    ("number", "issue"),
    ("pages", "pages"),
    ("doi", "doi"),
    ("publisher", "publisher"),
    ("isbn", "isbn"),
    ("issn", "issn"),
    ("url", "url"),
    ("abstract", "abstract"),
)


def citation_key_for(reference: Reference) -> str:
    """The stored key, or ``<FamilyName><Year>`` derived on the fly."""
    if reference.citation_key:
        return reference.citation_key
    first = family_name(reference.authors[0]) if reference.authors else ""
    return derive_citation_key(first, reference.year, fallback="Unknown")


def to_entry(reference: Reference) -> Entry:
    """Builds a bibtexparser Entry holding only the non-empty fields, in output order."""
    fields = []
    for bib_name, attr in FIELD_ORDER:
        value = getattr(reference, attr)
        if not value:
            continue
        if isinstance(value, list):
            value = " and ".join(value)
        # Values never carry braces of their own.
        value = str(value).replace("{", "").replace("}", "")
        fields.append(Field(bib_name, value))
    entry_type = ENTRY_TYPE_MAP.get(reference.type, DEFAULT_ENTRY_TYPE)
    return Entry(entry_type, citation_key_for(reference), fields)


def to_bibtex(reference: Reference) -> str:
    """Formats one reference as a BibTeX entry.

    Every field goes on its own ``  name={value}`` line; the last one has no
    trailing comma.
    """
    entry = to_entry(reference)
    text = f"@{entry.entry_type}{{{entry.key},\n"
    for field in entry.fields:
        text += f"  {field.key}={{{field.value}}},\n"
    return text[:-2] + "\n}"


def to_apa(reference: Reference) -> str:
    """``<authors joined by ', '> (<year>). <title>. <journal>.``"""
    authors = ", ".join(reference.authors)
    year = reference.year if reference.year else "n.d."
    return f"{authors} ({year}). {reference.title}. {reference.journal or ''}."


def export_bibtex(references) -> str:
    """Concatenates entries separated by a blank line, with a final newline."""
    entries = [to_bibtex(r) for r in references]
    return "\n\n".join(entries) + "\n" if entries else ""


def _field_value(entry: Entry, name: str):
    field = entry.fields_dict.get(name) or entry.fields_dict.get(name.upper())
    if field is None:
        return None
    value = field.value
    if isinstance(value, str):
        value = re.sub(r"\s+", " ", value.replace("{", "").replace("}", "")).strip()
    return value


def _names(value) -> list[str] | None:
    if not value:
        return None
    if isinstance(value, str):
        value = re.split(r"\s+and\s+", value)
    return [re.sub(r"[{}]", "", str(v)).strip() for v in value if str(v).strip()]


def entry_to_partial(entry: Entry) -> PartialMetadata:
    """Maps a parsed bibtexparser Entry onto a PartialMetadata."""
    keywords = _field_value(entry, "keywords")
    tags = [k.strip() for k in re.split(r"[,;]", keywords) if k.strip()] if keywords else None
    journal = _field_value(entry, "journal") or _field_value(entry, "booktitle")

    return PartialMetadata(
        source=MetadataSource.BIBTEX,
        title=_field_value(entry, "title"),
        authors=_names(_field_value(entry, "author")),
        editors=_names(_field_value(entry, "editor")),
        year=_field_value(entry, "year"),
        journal=journal,
        volume=_field_value(entry, "volume"),
        issue=_field_value(entry, "number"),
        pages=_field_value(entry, "pages"),
        publisher=_field_value(entry, "publisher"),
        isbn=_field_value(entry, "isbn"),
        issn=_field_value(entry, "issn"),
        doi=_field_value(entry, "doi"),
        url=_field_value(entry, "url"),
        abstract=_field_value(entry, "abstract"),
        type=IMPORT_TYPE_MAP.get(entry.entry_type.lower()),
        citation_key=entry.key or None,
        tags=tags,
    )


def parse_bibtex(text: str) -> list[PartialMetadata]:
    """Parses ``.bib`` content into partial records. Blocks that fail to parse are logged and skipped."""
    library = bibtexparser.parse_string(text, append_middleware=[SeparateCoAuthors()])
    if library.failed_blocks:
        logger.warning("Skipped %d BibTeX block(s) that could not be parsed", len(library.failed_blocks))
    partials = [entry_to_partial(entry) for entry in library.entries]
    logger.info("Parsed %d BibTeX entries", len(partials))
    return partials
