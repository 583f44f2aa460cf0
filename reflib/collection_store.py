import logging
import uuid

from pydantic import ValidationError

from .db_manager import DatabaseManager
from .errors import NotFound, ValidationFailure
from .models import DEFAULT_COLLECTION_COLOR, Collection, Reference
from .reference_store import ReferenceStore

logger = logging.getLogger(__name__)


class CollectionStore:
    """User-defined groupings of references.

    Membership lives on the references (``collection_ids``); deleting a
    collection rewrites every member in the same transaction that removes it.
    """

    def __init__(self, db: DatabaseManager, references: ReferenceStore):
        self.db = db
        self.references = references

    @staticmethod
    def _row_to_collection(row) -> Collection:
        return Collection(id=row["id"], name=row["name"], color=row["color"] or DEFAULT_COLLECTION_COLOR)

    @staticmethod
    def _validated(name, color) -> Collection:
        try:
            return Collection(name=name, color=color or DEFAULT_COLLECTION_COLOR)
        except ValidationError as e:
            raise ValidationFailure("Collection name must not be empty") from e

    def create(self, name: str, color: str | None = None) -> Collection:
        collection = self._validated(name, color)
        collection.id = uuid.uuid4().hex
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT INTO collections (id, name, color) VALUES (?, ?, ?)",
                (collection.id, collection.name, collection.color),
            )
        logger.info("Created collection '%s' (%s)", collection.name, collection.id)
        return collection

    def get(self, collection_id: str) -> Collection:
        row = self.db.fetchone("SELECT id, name, color FROM collections WHERE id = ?", (collection_id,))
        if not row:
            raise NotFound("collection", collection_id)
        return self._row_to_collection(row)

    def list_collections(self) -> list[Collection]:
        rows = self.db.fetchall("SELECT id, name, color FROM collections ORDER BY seq")
        return [self._row_to_collection(row) for row in rows]

    def rename(self, collection_id: str, name: str) -> Collection:
        current = self.get(collection_id)
        renamed = self._validated(name, current.color)
        with self.db.transaction() as cursor:
            cursor.execute("UPDATE collections SET name = ? WHERE id = ?", (renamed.name, collection_id))
            if cursor.rowcount == 0:
                raise NotFound("collection", collection_id)
        renamed.id = collection_id
        logger.info("Renamed collection %s to '%s'", collection_id, renamed.name)
        return renamed

    def recolor(self, collection_id: str, color: str) -> Collection:
        current = self.get(collection_id)
        with self.db.transaction() as cursor:
            cursor.execute("UPDATE collections SET color = ? WHERE id = ?", (color, collection_id))
        current.color = color
        return current

    def delete(self, collection_id: str) -> list[str]:
        """Removes the collection and its memberships. Returns the ids of the affected references."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM collections WHERE id = ?", (collection_id,))
            if cursor.rowcount == 0:
                raise NotFound("collection", collection_id)
            changed = self.references._strip_collection(cursor, collection_id)
        logger.info("Deleted collection %s; removed from %d reference(s)", collection_id, len(changed))
        return changed

    def count_references(self, collection_id: str) -> int:
        self.get(collection_id)
        return self.references._count_in_collection(collection_id)

    def add_reference(self, collection_id: str, ref_id: str) -> Reference:
        self.get(collection_id)
        return self.references.change_collections(ref_id, add=[collection_id])

    def remove_reference(self, collection_id: str, ref_id: str) -> Reference:
        return self.references.change_collections(ref_id, remove=[collection_id])
