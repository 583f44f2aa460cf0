import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DATA_DIR = Path.home() / ".reflib"
DEFAULT_GEMINI_MODELS = (
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
    "gemini-1.5-pro",
)


@dataclass(frozen=True)
class LibraryConfig:
    """Everything the stores and adapters need, passed in explicitly.

    Nothing in the library reads the environment once a config exists; build
    one with ``from_env()`` at the edge (the CLI) or directly in tests.
    """
    db_path: str | Path = DEFAULT_DATA_DIR / "library.db"
    blob_dir: str | Path = DEFAULT_DATA_DIR / "pdfs"
    gemini_api_key: str | None = field(default=None, repr=False)
    gemini_models: tuple[str, ...] = DEFAULT_GEMINI_MODELS
    mailto: str = "reflib@example.com"
    request_timeout: float = 15.0
    llm_timeout: float = 120.0
    max_pdf_pages: int = 15
    max_llm_chars: int = 30000

    @classmethod
    def from_env(cls, **overrides) -> "LibraryConfig":
        """Loads ``.env`` and reads the REFLIB_* / GEMINI_API_KEY variables."""
        load_dotenv()
        values = {}
        if os.getenv("REFLIB_DB_PATH"):
            values["db_path"] = os.getenv("REFLIB_DB_PATH")
        if os.getenv("REFLIB_BLOB_DIR"):
            values["blob_dir"] = os.getenv("REFLIB_BLOB_DIR")
        key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if key:
            values["gemini_api_key"] = key
        models = os.getenv("REFLIB_GEMINI_MODELS")
        if models:
            values["gemini_models"] = tuple(m.strip() for m in models.split(",") if m.strip())
        if os.getenv("REFLIB_MAILTO"):
            values["mailto"] = os.getenv("REFLIB_MAILTO")
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def with_overrides(self, **overrides) -> "LibraryConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
