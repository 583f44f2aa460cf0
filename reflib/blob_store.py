import hashlib
import json
import logging
import os
import tempfile
import uuid
from datetime import datetime
from pathlib import Path

from .errors import BlobStoreError, NotFound
from .models import Blob
from .utils import KeyedLock

logger = logging.getLogger(__name__)


class BlobStore:
    """Stores PDF payloads on disk, one ``<id>.pdf`` plus a ``<id>.json`` sidecar per blob."""

    def __init__(self, blob_dir: str | Path):
        """
        Args:
            blob_dir: Directory that holds the payloads. Created if missing.
        """
        self.blob_dir = Path(blob_dir)
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        self._locks = KeyedLock()

    def _calculate_checksum(self, content: bytes) -> str:
        """Calculates the SHA256 checksum of the file content."""
        return hashlib.sha256(content).hexdigest()

    def _payload_path(self, blob_id: str) -> Path:
        return self.blob_dir / f"{self._safe_id(blob_id)}.pdf"

    def _meta_path(self, blob_id: str) -> Path:
        return self.blob_dir / f"{self._safe_id(blob_id)}.json"

    @staticmethod
    def _safe_id(blob_id: str) -> str:
        safe = "".join(c for c in str(blob_id) if c.isalnum() or c in ('_', '-'))
        if not safe:
            raise NotFound("blob", str(blob_id))
        return safe

    def _write_atomic(self, path: Path, data: bytes):
        fd, tmp_name = tempfile.mkstemp(dir=self.blob_dir, prefix=".tmp_")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def put(self, payload: bytes, name: str = "", mime_type: str = "application/pdf",
            blob_id: str | None = None) -> Blob:
        """Writes a payload and returns its metadata. Overwrites ``blob_id`` if it exists."""
        blob_id = blob_id or uuid.uuid4().hex
        blob = Blob(
            id=blob_id,
            name=name,
            mime_type=mime_type,
            size=len(payload),
            checksum=self._calculate_checksum(payload),
            date_added=datetime.now().isoformat(timespec="seconds"),
        )
        with self._locks.hold(blob_id):
            try:
                self._write_atomic(self._payload_path(blob_id), payload)
                self._write_atomic(self._meta_path(blob_id), blob.model_dump_json().encode("utf-8"))
            except OSError as e:
                raise BlobStoreError(f"Could not write blob {blob_id}: {e}") from e
        logger.debug("Stored blob %s (%s, %d bytes)", blob_id, name, blob.size)
        return blob

    def exists(self, blob_id: str) -> bool:
        try:
            return self._payload_path(blob_id).exists()
        except NotFound:
            return False

    def get(self, blob_id: str, with_payload: bool = True) -> Blob:
        """Reads a blob back. Raises NotFound if it was never stored or was deleted."""
        with self._locks.hold(blob_id):
            payload_path = self._payload_path(blob_id)
            if not payload_path.exists():
                raise NotFound("blob", blob_id)
            try:
                meta_path = self._meta_path(blob_id)
                meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
                blob = Blob(**{**meta, "id": blob_id})
                if with_payload:
                    blob.payload = payload_path.read_bytes()
            except (OSError, ValueError) as e:
                raise BlobStoreError(f"Could not read blob {blob_id}: {e}") from e
        return blob

    def delete(self, blob_id: str):
        """Removes a blob. Raises NotFound if there is nothing to remove."""
        with self._locks.hold(blob_id):
            payload_path = self._payload_path(blob_id)
            if not payload_path.exists():
                raise NotFound("blob", blob_id)
            try:
                payload_path.unlink()
                self._meta_path(blob_id).unlink(missing_ok=True)
            except OSError as e:
                raise BlobStoreError(f"Could not delete blob {blob_id}: {e}") from e
        logger.debug("Deleted blob %s", blob_id)

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.blob_dir.glob("*.pdf"))
