"""Runs metadata sources against references and applies what they return.

Adapters do their I/O outside any lock; only the final merge is serialized
per reference (see ``ReferenceStore.apply``). A cancelled request, or one
whose reference was deleted in the meantime, is discarded instead of applied.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .errors import AdapterFailure, InvalidDOI, NotFound
from .llm_analyzer import GeminiAnalyzer, format_novelty_input
from .metadata_fetcher import CrossrefFetcher
from .models import MergePolicy, MetadataSource, PartialMetadata, Reference
from .pdf_extractor import PdfExtractor
from .reconcile import merge
from .reference_store import ReferenceStore

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"


@dataclass
class EnrichmentOutcome:
    status: OutcomeStatus
    source: MetadataSource
    reference: Reference | None = None
    # Set when a follow-up lookup failed after the main step succeeded.
    follow_up_error: AdapterFailure | None = None

    @property
    def applied(self) -> bool:
        return self.status is OutcomeStatus.APPLIED


def _cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


class Enricher:
    def __init__(self, references: ReferenceStore, pdf_extractor: PdfExtractor,
                 doi_fetcher: CrossrefFetcher, analyzer: GeminiAnalyzer):
        self.references = references
        self.pdf_extractor = pdf_extractor
        self.doi_fetcher = doi_fetcher
        self.analyzer = analyzer

    def _discarded(self, source: MetadataSource, reason: str) -> EnrichmentOutcome:
        logger.info("Discarded %s result: %s", source.value, reason)
        return EnrichmentOutcome(OutcomeStatus.DISCARDED, source)

    def _apply(self, ref_id: str, partial: PartialMetadata, policy: MergePolicy,
               cancel_event: threading.Event | None) -> EnrichmentOutcome:
        try:
            updated = self.references.apply(ref_id, partial, policy, cancel_event=cancel_event)
        except NotFound as e:
            if e.kind != "reference":
                raise
            return self._discarded(partial.source, f"reference {ref_id} no longer exists")
        if updated is None:
            return self._discarded(partial.source, "cancelled")
        return EnrichmentOutcome(OutcomeStatus.APPLIED, partial.source, updated)

    def import_pdf(self, payload: bytes, name: str = "", lookup_doi: bool = True,
                   cancel_event: threading.Event | None = None) -> EnrichmentOutcome:
        """Creates a reference from a PDF and attaches the file to it.

        When the PDF mentions a DOI and ``lookup_doi`` is set, the registry
        record is applied on top. A failed lookup is reported on the outcome
        and does not undo the import.
        """
        extraction = self.pdf_extractor.fetch(payload)
        if _cancelled(cancel_event):
            return self._discarded(MetadataSource.PDF, "cancelled")

        initial = merge(None, extraction.partial)
        if not initial.title and name:
            initial = initial.model_copy(update={"title": Path(name).stem})

        blob = self.references.blobs.put(payload, name=name)
        try:
            reference = self.references.create(initial, pdf_id=blob.id)
        except Exception:
            self.references.blobs.delete(blob.id)
            raise
        outcome = EnrichmentOutcome(OutcomeStatus.APPLIED, MetadataSource.PDF, reference)

        if lookup_doi and reference.doi:
            try:
                follow_up = self.refresh_from_doi(reference.id, cancel_event=cancel_event)
            except AdapterFailure as e:
                logger.warning("DOI lookup after importing %s failed: %s", name or reference.id, e)
                outcome.follow_up_error = e
            else:
                if follow_up.applied:
                    outcome.reference = follow_up.reference
        return outcome

    def import_doi(self, doi: str, cancel_event: threading.Event | None = None) -> EnrichmentOutcome:
        partial = self.doi_fetcher.fetch(doi)
        if _cancelled(cancel_event):
            return self._discarded(MetadataSource.DOI, "cancelled")
        reference = self.references.create(merge(None, partial))
        return EnrichmentOutcome(OutcomeStatus.APPLIED, MetadataSource.DOI, reference)

    def enrich_from_pdf(self, ref_id: str, cancel_event: threading.Event | None = None) -> EnrichmentOutcome:
        """Re-reads the attached PDF and fills fields that are still empty."""
        blob = self.references.get_pdf(ref_id)
        extraction = self.pdf_extractor.fetch(blob.payload)
        return self._apply(ref_id, extraction.partial, MergePolicy.ENRICH, cancel_event)

    def refresh_from_doi(self, ref_id: str, doi: str | None = None,
                         cancel_event: threading.Event | None = None) -> EnrichmentOutcome:
        """Looks the DOI up again and lets the registry values win."""
        doi = doi or self.references.get(ref_id).doi
        if not doi:
            raise InvalidDOI(doi)
        partial = self.doi_fetcher.fetch(doi)
        return self._apply(ref_id, partial, MergePolicy.REFRESH, cancel_event)

    def analyze(self, ref_id: str, cancel_event: threading.Event | None = None) -> EnrichmentOutcome:
        """Runs the LLM review over the attached PDF's text. Personal notes are kept."""
        blob = self.references.get_pdf(ref_id)
        text = self.pdf_extractor.extract_text(blob.payload)
        partial = self.analyzer.fetch(text)
        return self._apply(ref_id, partial, MergePolicy.REFRESH, cancel_event)

    def evaluate_novelty(self, ref_id: str) -> str:
        """Novelty assessment from a reference's title, authors, year and abstract. Nothing is stored."""
        reference = self.references.get(ref_id)
        return self.analyzer.evaluate_novelty(format_novelty_input(
            reference.title, reference.authors, reference.year, reference.abstract))

    def evaluate_pdf_novelty(self, payload: bytes) -> str:
        """Same as ``evaluate_novelty`` for a PDF that is not in the library."""
        partial = self.pdf_extractor.fetch(payload).partial
        return self.analyzer.evaluate_novelty(format_novelty_input(
            partial.title, partial.authors, partial.year, partial.abstract))
