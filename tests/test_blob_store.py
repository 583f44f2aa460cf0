import hashlib

import pytest

from reflib.errors import BlobStoreError, NotFound


def test_put_get_roundtrip_with_sidecar(blobs):
    blob = blobs.put(b"%PDF-1.4 data", name="paper.pdf")
    loaded = blobs.get(blob.id)
    assert loaded.payload == b"%PDF-1.4 data"
    assert loaded.name == "paper.pdf"
    assert loaded.size == len(b"%PDF-1.4 data")
    assert loaded.checksum == hashlib.sha256(b"%PDF-1.4 data").hexdigest()
    assert (blobs.blob_dir / f"{blob.id}.json").exists()


def test_get_without_payload(blobs):
    blob = blobs.put(b"abc")
    assert blobs.get(blob.id, with_payload=False).payload is None


def test_missing_blob_raises_not_found(blobs):
    with pytest.raises(NotFound):
        blobs.get("nope")
    with pytest.raises(NotFound):
        blobs.delete("nope")


def test_delete_removes_payload_and_sidecar(blobs):
    blob = blobs.put(b"abc")
    blobs.delete(blob.id)
    assert not blobs.exists(blob.id)
    assert not (blobs.blob_dir / f"{blob.id}.json").exists()
    assert blobs.list_ids() == []


def test_delete_io_error_is_blob_store_error(blobs, mocker):
    blob = blobs.put(b"abc")
    mocker.patch("pathlib.Path.unlink", side_effect=PermissionError("read-only"))
    with pytest.raises(BlobStoreError):
        blobs.delete(blob.id)


def test_ids_cannot_escape_directory(blobs):
    assert not blobs.exists("../../etc/passwd")
    blob = blobs.put(b"abc", blob_id="../evil")
    assert blob.id == "../evil"
    assert (blobs.blob_dir / "evil.pdf").exists()
