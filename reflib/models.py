"""Record types for references, collections, blobs and partial metadata.

Field names are snake_case; the LLM analysis payload is also accepted with the
camelCase keys the model is asked to produce (``researchQuestion`` ...).
"""

import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ReferenceType(str, Enum):
    JOURNAL_ARTICLE = "Journal Article"
    CONFERENCE_PAPER = "Conference Paper"
    BOOK_CHAPTER = "Book Chapter"
    BOOK = "Book"
    THESIS = "Thesis"
    TECHNICAL_REPORT = "Technical Report"
    PREPRINT = "Preprint"


class MetadataSource(str, Enum):
    PDF = "pdf"
    DOI = "doi"
    LLM = "llm"
    BIBTEX = "bibtex"
    MANUAL = "manual"


class MergePolicy(str, Enum):
    ENRICH = "enrich"
    REFRESH = "refresh"


class Folder(str, Enum):
    ALL_PAPERS = "All Papers"
    RECENTLY_ADDED = "Recently Added"
    FAVORITES = "Favorites"


TEXT_FIELDS = (
    "title", "journal", "volume", "issue", "pages", "publisher",
    "isbn", "issn", "doi", "url", "abstract",
)

REVIEW_TEXT_FIELDS = (
    "summary", "research_question", "methodology", "key_findings", "strengths",
    "weaknesses", "contributions", "future_work",
)

DEFAULT_COLLECTION_COLOR = "#6366f1"


def _coerce_text(value):
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


def _coerce_year(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value or None
    match = re.search(r"\d{4}", str(value))
    return int(match.group(0)) if match else None


def _coerce_string_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    seen = []
    for item in value:
        text = str(item).strip() if item is not None else ""
        if text and text not in seen:
            seen.append(text)
    return seen


def _coerce_reference_type(value):
    if value is None or isinstance(value, ReferenceType):
        return value
    for member in ReferenceType:
        if str(value).strip().lower() in (member.value.lower(), member.name.lower()):
            return member
    return None


class ReviewAnalysis(BaseModel):
    """Structured paper analysis as produced by the LLM adapter."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str = ""
    research_question: str = Field("", alias="researchQuestion")
    methodology: str = ""
    key_findings: str = Field("", alias="keyFindings")
    strengths: str = ""
    weaknesses: str = ""
    contributions: str = ""
    future_work: str = Field("", alias="futureWork")
    rating: int = 0

    @field_validator(*REVIEW_TEXT_FIELDS, mode="before")
    @classmethod
    def _text(cls, value):
        return _coerce_text(value)

    @field_validator("rating", mode="before")
    @classmethod
    def _rating(cls, value):
        try:
            rating = int(float(value))
        except (TypeError, ValueError):
            return 0
        return max(0, min(5, rating))

    def is_empty(self) -> bool:
        return not self.rating and not any(getattr(self, name) for name in REVIEW_TEXT_FIELDS)


class TechnicalReview(ReviewAnalysis):
    """A reviewer sheet; ``personal_notes`` belongs to the user alone."""

    personal_notes: str = Field("", alias="personalNotes")

    @field_validator("personal_notes", mode="before")
    @classmethod
    def _notes(cls, value):
        return _coerce_text(value)

    def is_empty(self) -> bool:
        return super().is_empty() and not self.personal_notes


class Reference(BaseModel):
    """One canonical bibliographic record."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    title: str = ""
    authors: List[str] = []
    year: Optional[int] = None
    journal: str = ""
    volume: str = ""
    issue: str = ""
    pages: str = ""
    publisher: str = ""
    isbn: str = ""
    issn: str = ""
    doi: str = ""
    url: str = ""
    abstract: str = ""
    type: Optional[ReferenceType] = None
    editors: List[str] = []
    citation_key: str = ""
    tags: List[str] = []
    collection_ids: List[str] = []
    favorite: bool = False
    notes: str = ""
    pdf_id: Optional[str] = None
    has_pdf: bool = False
    technical_review: Optional[TechnicalReview] = None

    @field_validator(*TEXT_FIELDS, "citation_key", mode="before")
    @classmethod
    def _text(cls, value):
        return _coerce_text(value)

    @field_validator("notes", mode="before")
    @classmethod
    def _notes(cls, value):
        # Notes keep the user's own whitespace.
        return "" if value is None else str(value)

    @field_validator("authors", "editors", "tags", "collection_ids", mode="before")
    @classmethod
    def _lists(cls, value):
        return _coerce_string_list(value)

    @field_validator("year", mode="before")
    @classmethod
    def _year(cls, value):
        return _coerce_year(value)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value):
        return _coerce_reference_type(value)

    @model_validator(mode="after")
    def _sync_has_pdf(self):
        self.has_pdf = self.pdf_id is not None
        return self


class PartialMetadata(BaseModel):
    """Best-effort metadata from one source. ``None`` means "not supplied".

    User-owned fields (notes, favorite, collection membership and the personal
    notes of a review) have no slot here, so no adapter can supply them.
    """

    model_config = ConfigDict(extra="ignore")

    source: MetadataSource
    title: Optional[str] = None
    authors: Optional[List[str]] = None
    year: Optional[int] = None
    journal: Optional[str] = None
    volume: Optional[str] = None
    issue: Optional[str] = None
    pages: Optional[str] = None
    publisher: Optional[str] = None
    isbn: Optional[str] = None
    issn: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None
    abstract: Optional[str] = None
    type: Optional[ReferenceType] = None
    editors: Optional[List[str]] = None
    citation_key: Optional[str] = None
    tags: Optional[List[str]] = None
    technical_review: Optional[ReviewAnalysis] = None

    @field_validator(*TEXT_FIELDS, "citation_key", mode="before")
    @classmethod
    def _text(cls, value):
        return None if value is None else _coerce_text(value)

    @field_validator("authors", "editors", "tags", mode="before")
    @classmethod
    def _lists(cls, value):
        return None if value is None else _coerce_string_list(value)

    @field_validator("year", mode="before")
    @classmethod
    def _year(cls, value):
        return _coerce_year(value)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, value):
        return _coerce_reference_type(value)


class Collection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str
    color: str = DEFAULT_COLLECTION_COLOR

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value):
        name = _coerce_text(value)
        if not name:
            raise ValueError("collection name must not be empty")
        return name


class Blob(BaseModel):
    """Stored PDF. ``payload`` is only populated when the blob is read back."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    mime_type: str = "application/pdf"
    size: int = 0
    checksum: str = ""
    date_added: Optional[str] = None
    payload: Optional[bytes] = Field(default=None, exclude=True, repr=False)


def is_empty_value(value) -> bool:
    """True for values that count as "not known" during reconciliation."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    if isinstance(value, ReviewAnalysis):
        return value.is_empty()
    return False
