"""Merging partial metadata into canonical references.

Everything here is pure: the same ``existing`` and ``incoming`` always give
the same result, and nothing is read from or written to storage.
"""

from .models import (
    REVIEW_TEXT_FIELDS,
    TEXT_FIELDS,
    MergePolicy,
    PartialMetadata,
    Reference,
    ReviewAnalysis,
    TechnicalReview,
    is_empty_value,
)
from .utils import clean_abstract, derive_citation_key, family_name, normalize_author_name, normalize_doi

# Fields an adapter may set. tags, citation_key and technical_review have their own rules.
OVERRIDABLE_FIELDS = TEXT_FIELDS + ("authors", "editors", "year", "type")

# Never taken from a PartialMetadata, whatever the policy.
USER_OWNED_FIELDS = ("notes", "favorite", "collection_ids")


def normalize_partial(incoming: PartialMetadata) -> PartialMetadata:
    """Applies field-level normalization to what a source supplied."""
    updates = {}
    if incoming.authors:
        updates["authors"] = [a for a in (normalize_author_name(n) for n in incoming.authors) if a]
    if incoming.editors:
        updates["editors"] = [e for e in (normalize_author_name(n) for n in incoming.editors) if e]
    if incoming.abstract:
        updates["abstract"] = clean_abstract(incoming.abstract)
    if incoming.doi:
        updates["doi"] = normalize_doi(incoming.doi)
    return incoming.model_copy(update=updates) if updates else incoming


def merge_review(current: TechnicalReview | None, incoming: ReviewAnalysis | None,
                 policy: MergePolicy = MergePolicy.ENRICH) -> TechnicalReview | None:
    """Sub-field merge of a review; ``personal_notes`` always stays as it was."""
    if incoming is None or incoming.is_empty():
        return current
    base = current.model_dump() if current is not None else {}
    result = dict(base)
    for name in REVIEW_TEXT_FIELDS + ("rating",):
        new = getattr(incoming, name)
        if not new:
            continue
        if policy is MergePolicy.REFRESH or not base.get(name):
            result[name] = new
    result["personal_notes"] = base.get("personal_notes", "")
    return TechnicalReview.model_validate(result)


def merge(existing: Reference | None, incoming: PartialMetadata,
          policy: MergePolicy | str = MergePolicy.ENRICH) -> Reference:
    """Reconciles ``incoming`` into ``existing`` and returns a new Reference.

    ENRICH keeps every non-empty existing value and only fills gaps. REFRESH
    lets every non-empty incoming value win. Under both policies tags are
    unioned, a present citation key is kept, and user-owned fields are left
    alone. With ``existing=None`` the result is a fresh record without an id;
    its citation key is derived here if the source did not supply one.
    """
    policy = MergePolicy(policy)
    incoming = normalize_partial(incoming)
    base = existing.model_dump() if existing is not None else {}
    merged = dict(base)

    for name in OVERRIDABLE_FIELDS:
        new = getattr(incoming, name)
        if is_empty_value(new):
            continue
        if policy is MergePolicy.REFRESH or is_empty_value(base.get(name)):
            merged[name] = new

    if incoming.tags:
        tags = list(base.get("tags") or [])
        merged["tags"] = tags + [t for t in incoming.tags if t not in tags]

    if is_empty_value(base.get("citation_key")) and not is_empty_value(incoming.citation_key):
        merged["citation_key"] = incoming.citation_key

    current_review = existing.technical_review if existing is not None else None
    review = merge_review(current_review, incoming.technical_review, policy)
    merged["technical_review"] = review.model_dump() if review is not None else None

    if existing is None and not merged.get("citation_key"):
        merged["citation_key"] = initial_citation_key(merged.get("authors"), merged.get("year"))

    return Reference.model_validate(merged)


def initial_citation_key(authors, year) -> str:
    """Key for a new record: needs at least a first author or a year to say anything."""
    first = family_name(authors[0]) if authors else ""
    if not first and not year:
        return ""
    return derive_citation_key(first, year, fallback="Unknown")
