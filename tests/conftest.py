import fitz
import pytest

from reflib.blob_store import BlobStore
from reflib.collection_store import CollectionStore
from reflib.config import LibraryConfig
from reflib.db_manager import DatabaseManager
from reflib.reference_store import ReferenceStore


def build_pdf(pages=("A study of things",), metadata=None) -> bytes:
    """Builds a small PDF in memory; an empty string gives a page without text."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    if metadata:
        doc.set_metadata(metadata)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def config(tmp_path):
    return LibraryConfig(
        db_path=":memory:",
        blob_dir=tmp_path / "pdfs",
        gemini_api_key="test-key",
        gemini_models=("model-a", "model-b", "model-c"),
    )


@pytest.fixture
def db():
    manager = DatabaseManager(":memory:")
    yield manager
    manager.close_connection()


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "pdfs")


@pytest.fixture
def store(db, blobs):
    return ReferenceStore(db, blobs)


@pytest.fixture
def collections(db, store):
    return CollectionStore(db, store)


@pytest.fixture
def make_pdf():
    return build_pdf
