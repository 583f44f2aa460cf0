import json
import logging

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from .config import LibraryConfig
from .errors import AnalysisFailure, InvalidCredential, ParseFailure
from .models import MetadataSource, PartialMetadata, ReviewAnalysis
from .utils import ServiceRateLimiter

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an expert academic reviewer. Analyze the following academic paper text and extract the key technical details.

Return the result ONLY as a valid JSON object with the following keys:
- summary: A concise summary of the paper (max 150 words).
- researchQuestion: The main problem or research question being addressed.
- methodology: The methods, algorithms, or approaches used.
- keyFindings: The main results, discoveries, or conclusions.
- strengths: The strong points of the paper.
- weaknesses: The limitations or weak points.
- contributions: How this paper advances the field.
- futureWork: Suggested future research directions mentioned in the paper.
- rating: An integer rating from 1 to 5 based on the quality and impact of the paper.

If a field cannot be found, return an empty string for it. Do not include any markdown formatting (like ```json) in the response, just the raw JSON string.

Paper Text:
{text}
"""

NOVELTY_PROMPT = """You are a strict editor at a top-tier journal. Most submissions you see are desk-rejected for lack of novelty or insufficient advance.

A paper is novel if it brings at least one of: a new problem the field must now care about, a new conceptual idea, new evidence that changes what was thought settled, or a new resource that changes how the community works. Benchmark gains, architecture tweaks and combinations of known methods are incremental.

Evaluate the paper or abstract below and answer in this structure:
1. Primary novelty axis claimed (problem / idea / understanding / resource / none clear)
2. Is the advance new in recent literature? (Yes / Borderline / No)
3. Would scientists outside the sub-field find it interesting? (Yes / Only direct competitors / No)
4. Is the field meaningfully different after this paper? (Yes, how / Only marginally / No)
5. Incremental red flags detected
6. A result that would make an editor send it to review? (Yes, which / No)
7. Predicted outcome at a top journal
8. The one-sentence rejection an editor would most likely write
9. Three actionable changes that would make the work competitive

=== PAPER / ABSTRACT STARTS HERE ===
{text}
=== PAPER / ABSTRACT ENDS HERE ===
"""

# HTTP status codes that mean the key itself is bad; no other model will do better.
CREDENTIAL_ERROR_CODES = {400, 401, 403}
MODEL_NOT_FOUND_CODE = 404

# Accepted both as the prompt spells them (camelCase) and as field names.
ANALYSIS_KEYS = set(ReviewAnalysis.model_fields) | {
    f.alias for f in ReviewAnalysis.model_fields.values() if f.alias
}


def extract_first_json_object(text: str | None) -> dict | None:
    """Returns the first balanced ``{...}`` in ``text`` parsed as JSON.

    Braces inside JSON strings are skipped, so a summary containing "{" does
    not end the object early. Only the first balanced object is considered:
    if it does not parse, the result is None rather than some object nested
    inside it. An opening brace that is never closed is passed over.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        data = json.loads(text[start:index + 1])
                    except json.JSONDecodeError:
                        return None
                    return data if isinstance(data, dict) else None
        start = text.find("{", start + 1)
    return None


def parse_analysis(text: str | None) -> ReviewAnalysis:
    """Validates a model response leniently: unknown keys are ignored, missing ones default.

    The object must carry at least one of the review keys.
    """
    data = extract_first_json_object(text)
    if data is None:
        raise ParseFailure("No JSON object found in the model response")
    if not ANALYSIS_KEYS.intersection(data):
        raise ParseFailure("Model response holds none of the analysis fields")
    try:
        return ReviewAnalysis.model_validate(data)
    except ValidationError as e:
        raise ParseFailure(f"Model response did not match the analysis schema: {e}") from e


def format_novelty_input(title=None, authors=None, year=None, abstract=None) -> str:
    """Summarizes a paper's metadata as the text handed to ``evaluate_novelty``."""
    return (
        f"Title: {title or 'Unknown'}\n"
        f"Authors: {', '.join(authors) if authors else 'Unknown'}\n"
        f"Year: {year or 'Unknown'}\n"
        f"Abstract: {abstract or 'No abstract available'}"
    )


class GeminiAnalyzer:
    """LLM adapter: asks Gemini for a structured technical review of a paper's text, or for a novelty assessment."""

    def __init__(self, config: LibraryConfig, rate_limiter: ServiceRateLimiter | None = None,
                 client_factory=genai.Client):
        """
        Args:
            config: Supplies the API key, the ordered candidate models and limits.
            rate_limiter: Shared limiter; a private one is created when omitted.
            client_factory: Callable building a client from ``api_key`` (tests pass a fake).
        """
        self.api_key = config.gemini_api_key
        self.models = tuple(config.gemini_models)
        self.max_chars = config.max_llm_chars
        self.timeout_ms = int(config.llm_timeout * 1000)
        self.rate_limiter = rate_limiter or ServiceRateLimiter()
        self.client_factory = client_factory
        self._client = None

    def _get_client(self):
        if self._client is None:
            self._client = self.client_factory(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=self.timeout_ms),
            )
        return self._client

    def build_prompt(self, text: str) -> str:
        return ANALYSIS_PROMPT.format(text=(text or "")[:self.max_chars])

    def fetch(self, text: str) -> PartialMetadata:
        """Analyzes ``text`` and returns a PartialMetadata carrying only ``technical_review``.

        Candidate models are tried in order. A model that does not exist (404)
        or fails for another transport reason passes to the next one; a rejected
        credential stops immediately with InvalidCredential; a response that
        cannot be parsed raises ParseFailure.
        """
        if not self.api_key:
            raise InvalidCredential("No Gemini API key configured")
        if not (text or "").strip():
            raise AnalysisFailure("There is no text to analyze")

        config = types.GenerateContentConfig(temperature=0.6, top_p=0.95, max_output_tokens=4096)
        response_text, model_name = self._generate(self.build_prompt(text), config)
        analysis = parse_analysis(response_text)
        logger.info("Analysis succeeded with model %s", model_name)
        return PartialMetadata(source=MetadataSource.LLM, technical_review=analysis)

    def evaluate_novelty(self, text: str) -> str:
        """Asks for an editor-style novelty assessment of ``text``; returns the model's prose.

        Uses the same model order, fallthrough and credential rules as ``fetch``.
        """
        if not self.api_key:
            raise InvalidCredential("No Gemini API key configured")
        if not (text or "").strip():
            raise AnalysisFailure("There is no text to evaluate")

        prompt = NOVELTY_PROMPT.format(text=text.strip()[:self.max_chars])
        config = types.GenerateContentConfig(temperature=0.3, max_output_tokens=2000)
        response_text, model_name = self._generate(prompt, config)
        logger.info("Novelty evaluation succeeded with model %s", model_name)
        return response_text.strip()

    def _generate(self, prompt: str, config) -> tuple[str, str]:
        """Returns ``(response_text, model_name)`` from the first model that answers."""
        client = self._get_client()
        last_error = None

        for model_name in self.models:
            logger.info("Attempting to call Gemini model: %s", model_name)
            self.rate_limiter.wait_if_needed('gemini')
            try:
                response = client.models.generate_content(model=model_name, contents=prompt, config=config)
            except genai_errors.APIError as e:
                if e.code == MODEL_NOT_FOUND_CODE:
                    logger.warning("Model %s not found (404). Trying next...", model_name)
                elif e.code in CREDENTIAL_ERROR_CODES:
                    raise InvalidCredential(f"Gemini rejected the API key: {e.message or e}") from e
                else:
                    logger.warning("Gemini API error %s with model %s: %s", e.code, model_name, e.message or e)
                last_error = e
                continue
            except Exception as e:
                logger.warning("Error calling model %s: %s", model_name, e)
                last_error = e
                continue

            response_text = getattr(response, "text", None)
            if not response_text or not response_text.strip():
                logger.warning("Empty response from model %s", model_name)
                last_error = AnalysisFailure(f"Empty response from {model_name}")
                continue
            return response_text, model_name

        raise AnalysisFailure(f"Failed to get a response from any model. Last error: {last_error}")
