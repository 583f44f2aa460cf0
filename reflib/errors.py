"""Exception taxonomy shared by the stores, the adapters and the CLI."""


class ReflibError(Exception):
    """Base class for all library errors."""

    user_message = "Operation failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class NotFound(ReflibError):
    """An operation named a reference, collection or blob that does not exist."""

    def __init__(self, kind: str, item_id: str):
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} not found: {item_id}")

    @property
    def user_message(self) -> str:
        return f"{self.kind.capitalize()} {self.item_id} does not exist"


class ValidationFailure(ReflibError):
    """User input rejected before touching storage."""

    user_message = "Invalid input"

    def __init__(self, message: str):
        self.user_message = message
        super().__init__(message)


class BlobStoreError(ReflibError):
    """The blob directory could not be read or written (other than a missing blob)."""

    user_message = "Could not access stored PDF"


class AdapterFailure(ReflibError):
    """A metadata source failed. Existing metadata is left untouched."""

    source = "adapter"
    user_message = "Metadata source failed"

    def __init__(self, message: str | None = None, *, source: str | None = None):
        if source:
            self.source = source
        super().__init__(message or self.user_message)


class ExtractionFailure(AdapterFailure):
    source = "pdf"
    user_message = "Could not read PDF"


class InvalidDOI(AdapterFailure):
    source = "doi"
    user_message = "Invalid DOI"

    def __init__(self, doi: str | None):
        self.doi = doi
        super().__init__(f"Not a valid DOI: {doi!r}")


class LookupFailure(AdapterFailure):
    source = "doi"
    user_message = "DOI lookup failed"


class InvalidCredential(AdapterFailure):
    source = "llm"
    user_message = "API key was rejected"


class ParseFailure(AdapterFailure):
    source = "llm"
    user_message = "Could not parse AI analysis"


class AnalysisFailure(AdapterFailure):
    """Every candidate model failed for a reason other than the credential."""

    source = "llm"
    user_message = "AI analysis failed"
