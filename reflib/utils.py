import logging
import re
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DOI_URL_PREFIX = re.compile(r"^https?://(dx\.)?doi\.org/", re.IGNORECASE)
DOI_PATTERN = re.compile(r"^10\.\d{4,}/\S+$")

# Tried in order; the first match wins.
DOI_TEXT_PATTERNS = (
    re.compile(r"doi:\s*(10\.\d{4,}/\S+)", re.IGNORECASE),
    re.compile(r"https?://(?:dx\.)?doi\.org/(10\.\d{4,}/\S+)", re.IGNORECASE),
    re.compile(r"\b(10\.\d{4,}/\S+)"),
)

HTML_ENTITIES = {
    "&lt;": "<",
    "&gt;": ">",
    "&amp;": "&",
    "&quot;": '"',
    "&apos;": "'",
}

DEFAULT_SERVICE_LIMITS = {
    'crossref': {'limit': 50, 'window': 1},
    'gemini': {'limit': 15, 'window': 60},
    'default': {'limit': 5, 'window': 1},
}


class ServiceRateLimiter:
    """Sliding-window throttle shared by the network adapters.

    ``service_config`` maps a service name to ``{'limit': n, 'window': seconds}``;
    names without an entry use the ``'default'`` limits (see
    DEFAULT_SERVICE_LIMITS). Each service keeps its own request log and lock.
    """
    def __init__(self, service_config=None):
        self.service_config = service_config or DEFAULT_SERVICE_LIMITS
        self.request_logs = {service: deque() for service in self.service_config}
        self.locks = {service: threading.Lock() for service in self.service_config}
        self._registry_lock = threading.Lock()

    def wait_if_needed(self, service_name):
        """Sleeps until ``service_name`` has room in its window, then records the request."""
        config = self.service_config.get(service_name, self.service_config.get('default'))
        if not config:
            return True

        with self._registry_lock:
            if service_name not in self.locks:
                self.locks[service_name] = threading.Lock()
                self.request_logs[service_name] = deque()

        limit = config['limit']
        window = timedelta(seconds=config['window'])

        with self.locks[service_name]:
            now = datetime.now()
            log = self.request_logs[service_name]

            while log and (now - log[0]) > window:
                log.popleft()

            if len(log) >= limit:
                time_to_wait = (log[0] + window) - now
                if time_to_wait.total_seconds() > 0:
                    logger.info("Rate limit for '%s' reached. Waiting for %.2f seconds.",
                                service_name, time_to_wait.total_seconds())
                    time.sleep(time_to_wait.total_seconds())

            log.append(datetime.now())
            return True


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def normalize_doi(doi: str | None) -> str:
    """Strips a doi.org URL prefix and surrounding whitespace."""
    if not doi:
        return ""
    return DOI_URL_PREFIX.sub("", doi.strip()).strip()


def is_valid_doi(doi: str | None) -> bool:
    """Checks the DOI grammar ``10.<4+ digits>/<non-whitespace>+`` after normalization."""
    normalized = normalize_doi(doi)
    return bool(normalized and DOI_PATTERN.match(normalized))


def format_doi_url(doi: str | None) -> str:
    normalized = normalize_doi(doi)
    return f"https://doi.org/{normalized}" if normalized else ""


def extract_doi(text: str | None) -> str | None:
    """Finds the first DOI mentioned in free text, without trailing punctuation."""
    if not text:
        return None
    for pattern in DOI_TEXT_PATTERNS:
        match = pattern.search(text)
        if match:
            return re.sub(r"[.,;:!?)\]]+$", "", match.group(1).strip())
    return None


def clean_abstract(text: str | None) -> str:
    """Removes JATS/HTML tags, decodes the five standard entities and collapses whitespace."""
    if not text:
        return ""
    cleaned = re.sub(r"<[^>]+>", "", text)
    # &amp; last so "&amp;lt;" decodes to "&lt;" rather than "<"
    for entity in ("&lt;", "&gt;", "&quot;", "&apos;", "&amp;"):
        cleaned = cleaned.replace(entity, HTML_ENTITIES[entity])
    return re.sub(r"\s+", " ", cleaned).strip()


def format_person_name(given: str | None, family: str | None) -> str:
    """Crossref-style name parts to "Family, Given"."""
    given = (given or "").strip()
    family = (family or "").strip()
    if family:
        return f"{family}, {given}".strip().rstrip(",")
    return given


def normalize_author_name(name: str | None) -> str:
    """Free-form "Given Family" (or already "Family, Given") to "Family, Given"."""
    if not name:
        return ""
    name = re.sub(r"\s+", " ", name).strip()
    if "," in name:
        family, _, given = name.partition(",")
        return format_person_name(given, family)
    parts = name.split(" ")
    if len(parts) == 1:
        return name
    return format_person_name(" ".join(parts[:-1]), parts[-1])


def family_name(author: str | None) -> str:
    """Surname of an author string, "Family, Given" or "Given Family"."""
    if not author:
        return ""
    author = author.strip()
    if "," in author:
        return author.split(",")[0].strip()
    parts = author.split()
    return parts[-1] if parts else ""


def derive_citation_key(family: str | None, year: int | str | None, fallback: str = "") -> str:
    """``<Family><Year>`` with every non-letter removed from the family name."""
    cleaned = re.sub(r"[^a-zA-Z]", "", family or "") or fallback
    year_str = str(year) if year else ""
    return f"{cleaned}{year_str}"


def disambiguate_citation_key(key: str, taken) -> str:
    """Appends a, b, ... z, aa, ab ... until ``key`` does not collide with ``taken``."""
    if not key or key not in taken:
        return key
    index = 0
    while True:
        suffix = ""
        n = index
        while True:
            suffix = chr(ord("a") + n % 26) + suffix
            n = n // 26 - 1
            if n < 0:
                break
        candidate = f"{key}{suffix}"
        if candidate not in taken:
            return candidate
        index += 1
