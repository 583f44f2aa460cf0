import logging
from concurrent.futures import Future, ThreadPoolExecutor

from .blob_store import BlobStore
from .collection_store import CollectionStore
from .config import LibraryConfig
from .db_manager import DatabaseManager
from .enrichment import Enricher
from .llm_analyzer import GeminiAnalyzer
from .metadata_fetcher import CrossrefFetcher
from .pdf_extractor import PdfExtractor
from .reference_store import ReferenceStore
from .utils import ServiceRateLimiter

logger = logging.getLogger(__name__)


class Library:
    """Wires the stores and metadata sources for one library on disk.

    Usable as a context manager; ``close()`` waits for background work and
    releases the database connection.
    """

    def __init__(self, config: LibraryConfig, max_workers: int = 4, analyzer_client_factory=None):
        self.config = config
        self.db = DatabaseManager(config.db_path)
        self.blobs = BlobStore(config.blob_dir)
        self.references = ReferenceStore(self.db, self.blobs)
        self.collections = CollectionStore(self.db, self.references)

        self.rate_limiter = ServiceRateLimiter()
        self.pdf_extractor = PdfExtractor(config)
        self.doi_fetcher = CrossrefFetcher(config, rate_limiter=self.rate_limiter)
        analyzer_kwargs = {"client_factory": analyzer_client_factory} if analyzer_client_factory else {}
        self.analyzer = GeminiAnalyzer(config, rate_limiter=self.rate_limiter, **analyzer_kwargs)
        self.enricher = Enricher(self.references, self.pdf_extractor, self.doi_fetcher, self.analyzer)

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reflib")

    def submit(self, fn, *args, **kwargs) -> Future:
        """Runs an enrichment in the background; results apply in completion order."""
        return self._executor.submit(fn, *args, **kwargs)

    def close(self):
        self._executor.shutdown(wait=True)
        self.db.close_connection()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
