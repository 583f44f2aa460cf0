import logging
from urllib.parse import quote

import requests

from .config import LibraryConfig
from .errors import InvalidDOI, LookupFailure
from .models import MetadataSource, PartialMetadata, ReferenceType
from .utils import (
    ServiceRateLimiter,
    clean_abstract,
    derive_citation_key,
    family_name,
    format_doi_url,
    format_person_name,
    is_valid_doi,
    normalize_doi,
)

logger = logging.getLogger(__name__)

CROSSREF_WORKS_URL = "https://api.crossref.org/works"

CROSSREF_TYPE_MAP = {
    "journal-article": ReferenceType.JOURNAL_ARTICLE,
    "proceedings-article": ReferenceType.CONFERENCE_PAPER,
    "book-chapter": ReferenceType.BOOK_CHAPTER,
    "book": ReferenceType.BOOK,
    "monograph": ReferenceType.BOOK,
    "posted-content": ReferenceType.PREPRINT,
    "report": ReferenceType.TECHNICAL_REPORT,
    "dissertation": ReferenceType.THESIS,
}

# Checked in order; the first one carrying a year wins.
DATE_FIELDS = ("published", "published-print", "published-online", "issued")


def map_crossref_type(work_type: str | None) -> ReferenceType:
    return CROSSREF_TYPE_MAP.get(work_type or "", ReferenceType.JOURNAL_ARTICLE)


def _first(values) -> str:
    if isinstance(values, list):
        return str(values[0]) if values else ""
    return str(values or "")


def _people(entries) -> list[str]:
    names = []
    for person in entries or []:
        name = format_person_name(person.get("given"), person.get("family"))
        if not name:
            name = (person.get("name") or "").strip()
        if name:
            names.append(name)
    return names


def _year(work: dict) -> int | None:
    for field_name in DATE_FIELDS:
        parts = (work.get(field_name) or {}).get("date-parts") or []
        if parts and parts[0] and parts[0][0]:
            try:
                return int(parts[0][0])
            except (TypeError, ValueError):
                continue
    return None


def parse_crossref_work(work: dict, doi: str) -> PartialMetadata:
    """Maps a Crossref ``message`` object onto a PartialMetadata."""
    authors = _people(work.get("author"))
    year = _year(work)
    citation_key = None
    if authors and year:
        citation_key = derive_citation_key(family_name(authors[0]), year) or None

    return PartialMetadata(
        source=MetadataSource.DOI,
        title=_first(work.get("title")),
        authors=authors,
        editors=_people(work.get("editor")),
        year=year,
        journal=_first(work.get("container-title")),
        volume=work.get("volume") or "",
        issue=work.get("issue") or "",
        pages=work.get("page") or "",
        publisher=work.get("publisher") or "",
        isbn=_first(work.get("ISBN")),
        issn=_first(work.get("ISSN")),
        doi=doi,
        url=work.get("URL") or format_doi_url(doi),
        abstract=clean_abstract(work.get("abstract")),
        type=map_crossref_type(work.get("type")),
        citation_key=citation_key,
    )


class CrossrefFetcher:
    """DOI adapter: looks a work up in the Crossref registry."""

    def __init__(self, config: LibraryConfig, rate_limiter: ServiceRateLimiter | None = None,
                 session: requests.Session | None = None):
        """
        Args:
            config: Supplies the politeness ``mailto`` and the request timeout.
            rate_limiter: Shared limiter; a private one is created when omitted.
            session: Optional requests session (tests pass a fake).
        """
        self.base_url = CROSSREF_WORKS_URL
        self.headers = {
            'Accept': 'application/json',
            'User-Agent': f'reflib/0.1 (mailto:{config.mailto})'
        }
        self.timeout = config.request_timeout
        self.rate_limiter = rate_limiter or ServiceRateLimiter()
        self.session = session or requests

    def fetch(self, doi: str) -> PartialMetadata:
        """Returns the registry metadata for ``doi``.

        Raises InvalidDOI before any network traffic if the DOI is malformed,
        LookupFailure on any transport error, non-200 status or missing record.
        """
        if not is_valid_doi(doi):
            raise InvalidDOI(doi)
        doi = normalize_doi(doi)
        url = f"{self.base_url}/{quote(doi, safe='')}"
        logger.info("Querying Crossref for DOI %s", doi)

        try:
            self.rate_limiter.wait_if_needed('crossref')
            response = self.session.get(url, headers=self.headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise LookupFailure(f"Request error fetching DOI {doi} from Crossref: {e}") from e

        if response.status_code != 200:
            logger.warning("Crossref returned HTTP %s for %s", response.status_code, doi)
            raise LookupFailure(f"Crossref returned HTTP {response.status_code} for {doi}")

        try:
            data = response.json()
            work = data.get("message") if isinstance(data, dict) else None
        except ValueError as e:
            raise LookupFailure(f"Crossref returned invalid JSON for {doi}") from e
        if not isinstance(work, dict):
            raise LookupFailure(f"Crossref returned no work record for {doi}")

        return parse_crossref_work(work, doi)
