import json
import logging
import threading
import uuid
from dataclasses import dataclass, field

from pydantic import ValidationError

from .blob_store import BlobStore
from .db_manager import DatabaseManager
from .errors import BlobStoreError, NotFound, ReflibError, ValidationFailure
from .models import Blob, Folder, MergePolicy, PartialMetadata, Reference
from .reconcile import initial_citation_key, merge
from .utils import KeyedLock, disambiguate_citation_key

logger = logging.getLogger(__name__)

# Managed through attach_pdf/detach_pdf, or fixed at creation.
NON_EDITABLE_FIELDS = {"id", "pdf_id", "has_pdf"}

SEARCH_FIELDS = ("title", "journal", "abstract")


@dataclass
class ReferenceQuery:
    folder: Folder = Folder.ALL_PAPERS
    collection_id: str | None = None
    search: str = ""
    limit: int | None = None


@dataclass
class QueryResult:
    references: list[Reference]

    @property
    def count(self) -> int:
        return len(self.references)

    def __iter__(self):
        return iter(self.references)

    def __len__(self):
        return len(self.references)


@dataclass
class BulkResult:
    """Per-id outcome of a bulk operation. Nothing is dropped silently."""
    succeeded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.missing and not self.failed

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.missing) + len(self.failed)


def matches_search(reference: Reference, needle: str) -> bool:
    """Case-insensitive substring match over title, authors, journal, abstract and tags."""
    needle = needle.strip().lower()
    if not needle:
        return True
    haystack = [getattr(reference, name) for name in SEARCH_FIELDS]
    haystack.extend(reference.authors)
    haystack.extend(reference.tags)
    return any(needle in (value or "").lower() for value in haystack)


class ReferenceStore:
    """Authoritative store of canonical references.

    Every mutation of a reference runs under that reference's own lock, and
    the row itself is re-read and rewritten inside a single database
    transaction, so concurrent writers always start from the latest state.
    """

    def __init__(self, db: DatabaseManager, blobs: BlobStore):
        self.db = db
        self.blobs = blobs
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    def _row_to_reference(self, row) -> Reference:
        return Reference.model_validate_json(row["record_json"])

    def _load(self, cursor, ref_id: str) -> Reference:
        row = cursor.execute(
            "SELECT record_json FROM library_references WHERE id = ?", (ref_id,)
        ).fetchone()
        if not row:
            raise NotFound("reference", ref_id)
        return self._row_to_reference(row)

    def _taken_citation_keys(self, cursor, exclude_id: str | None) -> set[str]:
        rows = cursor.execute(
            "SELECT citation_key FROM library_references WHERE id != ? AND citation_key != ''",
            (exclude_id or "",),
        ).fetchall()
        return {row["citation_key"] for row in rows}

    def _check_collections(self, cursor, collection_ids):
        for collection_id in collection_ids:
            row = cursor.execute("SELECT 1 FROM collections WHERE id = ?", (collection_id,)).fetchone()
            if not row:
                raise NotFound("collection", collection_id)

    def _save(self, cursor, reference: Reference):
        cursor.execute(
            """UPDATE library_references
                  SET citation_key = ?, favorite = ?, record_json = ?, date_modified = CURRENT_TIMESTAMP
                WHERE id = ?""",
            (reference.citation_key, int(reference.favorite), reference.model_dump_json(), reference.id),
        )

    @staticmethod
    def _validated(data: dict) -> Reference:
        try:
            return Reference.model_validate(data)
        except ValidationError as e:
            raise ValidationFailure(f"Invalid reference fields: {e.errors()[0].get('msg', e)}") from e

    def _mutate(self, ref_id: str, change) -> Reference:
        """Re-reads ``ref_id`` inside a transaction, applies ``change`` and writes the result.

        Callers hold the per-id lock. ``change`` receives the latest persisted
        Reference and returns the new one.
        """
        with self.db.transaction() as cursor:
            current = self._load(cursor, ref_id)
            updated = change(current)
            if updated.id != ref_id:
                raise ValidationFailure("The id of a reference cannot change")
            if set(updated.collection_ids) - set(current.collection_ids):
                self._check_collections(cursor, updated.collection_ids)
            if updated.citation_key and updated.citation_key != current.citation_key:
                taken = self._taken_citation_keys(cursor, ref_id)
                key = disambiguate_citation_key(updated.citation_key, taken)
                if key != updated.citation_key:
                    updated = self._validated({**updated.model_dump(), "citation_key": key})
            self._save(cursor, updated)
        return updated

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, reference: Reference | dict | None = None, **fields) -> Reference:
        """Stores a new reference under a freshly minted id.

        A missing citation key is derived from the first author and year;
        a key that collides with another reference gets a letter suffix.
        """
        if isinstance(reference, Reference):
            data = reference.model_dump()
        else:
            data = dict(reference or {})
        data.update(fields)
        data["id"] = uuid.uuid4().hex
        new_ref = self._validated(data)

        if new_ref.pdf_id and not self.blobs.exists(new_ref.pdf_id):
            raise NotFound("blob", new_ref.pdf_id)

        with self._locks.hold(new_ref.id), self.db.transaction() as cursor:
            self._check_collections(cursor, new_ref.collection_ids)
            key = new_ref.citation_key or initial_citation_key(new_ref.authors, new_ref.year)
            key = disambiguate_citation_key(key, self._taken_citation_keys(cursor, None))
            if key != new_ref.citation_key:
                new_ref = self._validated({**new_ref.model_dump(), "citation_key": key})
            cursor.execute(
                "INSERT INTO library_references (id, citation_key, favorite, record_json) VALUES (?, ?, ?, ?)",
                (new_ref.id, new_ref.citation_key, int(new_ref.favorite), new_ref.model_dump_json()),
            )
        logger.info("Created reference %s (%s)", new_ref.id, new_ref.citation_key or new_ref.title[:50])
        return new_ref

    def get(self, ref_id: str) -> Reference:
        row = self.db.fetchone("SELECT record_json FROM library_references WHERE id = ?", (ref_id,))
        if not row:
            raise NotFound("reference", ref_id)
        return self._row_to_reference(row)

    def exists(self, ref_id: str) -> bool:
        return self.db.fetchone("SELECT 1 FROM library_references WHERE id = ?", (ref_id,)) is not None

    def update(self, ref_id: str, fields: dict) -> Reference:
        """Applies user edits. Unknown collection ids raise NotFound."""
        blocked = NON_EDITABLE_FIELDS.intersection(fields)
        if blocked:
            raise ValidationFailure(f"Fields cannot be edited directly: {', '.join(sorted(blocked))}")

        def change(current: Reference) -> Reference:
            data = current.model_dump()
            data.update(fields)
            return self._validated(data)

        with self._locks.hold(ref_id):
            return self._mutate(ref_id, change)

    def change_collections(self, ref_id: str, add=(), remove=()) -> Reference:
        """Adds and removes collection memberships against the latest stored list."""
        def change(current: Reference) -> Reference:
            ids = [c for c in current.collection_ids if c not in remove]
            ids += [c for c in add if c not in ids]
            return self._validated({**current.model_dump(), "collection_ids": ids})

        with self._locks.hold(ref_id):
            return self._mutate(ref_id, change)

    def apply(self, ref_id: str, incoming: PartialMetadata,
              policy: MergePolicy | str = MergePolicy.ENRICH,
              cancel_event: threading.Event | None = None) -> Reference | None:
        """Merges ``incoming`` into the latest persisted state of ``ref_id``.

        Returns None without writing if ``cancel_event`` was set by the time
        the lock is acquired. Raises NotFound if the reference is gone.
        """
        with self._locks.hold(ref_id):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Discarding %s metadata for %s: cancelled", incoming.source.value, ref_id)
                return None
            updated = self._mutate(ref_id, lambda current: merge(current, incoming, policy))
        logger.info("Applied %s metadata to %s (%s)", incoming.source.value, ref_id, MergePolicy(policy).value)
        return updated

    def delete(self, ref_id: str) -> Reference:
        """Deletes a reference and its attached blob.

        The blob goes first. A blob that is already missing is logged and
        ignored; any other blob error leaves the reference in place.
        """
        with self._locks.hold(ref_id):
            current = self.get(ref_id)
            if current.pdf_id:
                try:
                    self.blobs.delete(current.pdf_id)
                except NotFound:
                    logger.warning("Blob %s of reference %s was already missing", current.pdf_id, ref_id)
            with self.db.transaction() as cursor:
                cursor.execute("DELETE FROM library_references WHERE id = ?", (ref_id,))
        logger.info("Deleted reference %s", ref_id)
        return current

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def _bulk(self, ids, action, label: str) -> BulkResult:
        result = BulkResult()
        for ref_id in dict.fromkeys(ids):
            try:
                action(ref_id)
                result.succeeded.append(ref_id)
            except NotFound as e:
                if e.kind != "reference":
                    result.failed[ref_id] = str(e)
                else:
                    result.missing.append(ref_id)
            except ReflibError as e:
                logger.error("%s failed for %s: %s", label, ref_id, e)
                result.failed[ref_id] = str(e)
        logger.info("%s: %d succeeded, %d missing, %d failed",
                    label, len(result.succeeded), len(result.missing), len(result.failed))
        return result

    def bulk_delete(self, ids) -> BulkResult:
        return self._bulk(ids, self.delete, "Bulk delete")

    def bulk_set_favorite(self, ids, value: bool) -> BulkResult:
        return self._bulk(ids, lambda ref_id: self.update(ref_id, {"favorite": bool(value)}), "Bulk favorite")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, query: ReferenceQuery | None = None, **kwargs) -> QueryResult:
        """Folder view, optional collection filter and free-text search."""
        query = query or ReferenceQuery(**kwargs)
        folder = Folder(query.folder)

        sql = "SELECT record_json FROM library_references"
        if folder is Folder.FAVORITES:
            sql += " WHERE favorite = 1"
        sql += " ORDER BY seq DESC" if folder is Folder.RECENTLY_ADDED else " ORDER BY seq"

        references = [self._row_to_reference(row) for row in self.db.fetchall(sql)]
        if query.collection_id:
            references = [r for r in references if query.collection_id in r.collection_ids]
        if query.search:
            references = [r for r in references if matches_search(r, query.search)]
        if query.limit is not None:
            references = references[:query.limit]
        return QueryResult(references)

    def all(self) -> list[Reference]:
        return self.query().references

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def attach_pdf(self, ref_id: str, payload: bytes, name: str = "",
                   mime_type: str = "application/pdf") -> Reference:
        """Stores ``payload`` and points the reference at it; a replaced blob is released afterwards."""
        with self._locks.hold(ref_id):
            if not self.exists(ref_id):
                raise NotFound("reference", ref_id)
            blob = self.blobs.put(payload, name=name, mime_type=mime_type)
            previous = {}

            def change(current: Reference) -> Reference:
                previous["pdf_id"] = current.pdf_id
                return self._validated({**current.model_dump(), "pdf_id": blob.id})

            try:
                updated = self._mutate(ref_id, change)
            except ReflibError:
                self.blobs.delete(blob.id)
                raise

            old_id = previous.get("pdf_id")
            if old_id and old_id != blob.id:
                try:
                    self.blobs.delete(old_id)
                except NotFound:
                    pass
                except BlobStoreError as e:
                    logger.warning("Could not release replaced blob %s: %s", old_id, e)
        logger.info("Attached %s to reference %s", name or blob.id, ref_id)
        return updated

    def detach_pdf(self, ref_id: str) -> Reference:
        """Clears pdf_id on the reference first, then deletes the blob."""
        with self._locks.hold(ref_id):
            previous = {}

            def change(current: Reference) -> Reference:
                previous["pdf_id"] = current.pdf_id
                return self._validated({**current.model_dump(), "pdf_id": None})

            updated = self._mutate(ref_id, change)
            if previous.get("pdf_id"):
                try:
                    self.blobs.delete(previous["pdf_id"])
                except NotFound:
                    logger.warning("Blob %s was already missing", previous["pdf_id"])
        return updated

    def get_pdf(self, ref_id: str) -> Blob:
        reference = self.get(ref_id)
        if not reference.pdf_id:
            raise NotFound("pdf", ref_id)
        return self.blobs.get(reference.pdf_id)

    # ------------------------------------------------------------------
    # Used by CollectionStore inside its own transaction
    # ------------------------------------------------------------------

    def _strip_collection(self, cursor, collection_id: str) -> list[str]:
        """Removes ``collection_id`` from every member; returns the ids that changed."""
        changed = []
        pattern = f'%{json.dumps(collection_id)}%'
        rows = cursor.execute(
            "SELECT record_json FROM library_references WHERE record_json LIKE ?", (pattern,)
        ).fetchall()
        for row in rows:
            reference = self._row_to_reference(row)
            if collection_id not in reference.collection_ids:
                continue
            remaining = [c for c in reference.collection_ids if c != collection_id]
            self._save(cursor, self._validated({**reference.model_dump(), "collection_ids": remaining}))
            changed.append(reference.id)
        return changed

    def _count_in_collection(self, collection_id: str) -> int:
        return self.query(ReferenceQuery(collection_id=collection_id)).count
