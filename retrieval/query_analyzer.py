"""Query analysis via LLM: actionability, request type and search keywords."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import ValidationError

from core.clients import get_openai_client, get_rate_limiter
from core.config import settings
from core.errors import AnalyzerError
from core.models import QueryAnalysis

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from core.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_CLARIFYING_QUESTION = "Could you describe in more detail what you would like to change?"

ANALYSIS_PROMPT = """You are a query analyzer for Strudel music code generation.

Your task: Analyze the user's query and determine:
1. Is it actionable (specific enough to proceed)?
2. Is it a code request (wants code generated) or a question (wants information/explanation)?

Return a JSON object with this structure:
{
  "transformed_query": "3-5 technical keywords for search (comma-separated)",
  "is_actionable": true/false,
  "is_code_request": true/false,
  "concrete_requests": ["list", "of", "specific", "things", "to", "do"],
  "clarifying_questions": ["list", "of", "questions", "if", "vague"]
}

CLASSIFICATION RULES:

1. CODE REQUESTS (is_code_request: true) - User wants code generated:
   - "set the bpm to 120" -> wants code
   - "add a kick drum on every beat" -> wants code
   - "make the hi-hats faster" -> wants code modification
   - "create a bassline" -> wants code

2. QUESTIONS (is_code_request: false) - User wants information/explanation:
   - "how do I use lpf?" -> asking for explanation
   - "what does the note function do?" -> asking for information
   - "what key is good for house music?" -> asking for advice
   - "what's the difference between sound() and note()?" -> asking for comparison

3. ACTIONABLE vs VAGUE:
   - Actionable: Specific enough to proceed (either generate code or answer question)
   - Vague: Needs clarification before proceeding

EXAMPLES:

Input: "set the bpm to 120"
{
  "transformed_query": "tempo, bpm, speed, setcpm",
  "is_actionable": true,
  "is_code_request": true,
  "concrete_requests": ["set tempo to 120 BPM"],
  "clarifying_questions": []
}

Input: "create a house beat"
{
  "transformed_query": "house music, beat, rhythm, drums, pattern",
  "is_actionable": false,
  "is_code_request": true,
  "concrete_requests": [],
  "clarifying_questions": ["What BPM would you like?", "Which elements should I add? (kick, hi-hat, snare, etc.)"]
}

Input: "add a kick drum on every beat"
{
  "transformed_query": "kick drum, bd, bass drum, four on the floor, rhythm",
  "is_actionable": true,
  "is_code_request": true,
  "concrete_requests": ["add kick drum pattern with hits on every beat"],
  "clarifying_questions": []
}

Input: "how do I use the lpf filter?"
{
  "transformed_query": "lpf, low pass filter, cutoff, frequency",
  "is_actionable": true,
  "is_code_request": false,
  "concrete_requests": [],
  "clarifying_questions": []
}

Return ONLY valid JSON, no markdown or explanations."""


def _normalize(analysis: QueryAnalysis) -> QueryAnalysis:
    """Enforce the list/flag relationships the rest of the pipeline relies on."""
    if analysis.is_actionable:
        analysis.clarifying_questions = []
    elif not analysis.clarifying_questions:
        analysis.clarifying_questions = [DEFAULT_CLARIFYING_QUESTION]

    if not (analysis.is_actionable and analysis.is_code_request):
        analysis.concrete_requests = []
    return analysis


class QueryAnalyzer:
    """Classifies user queries and expands them with technical keywords."""

    def __init__(
        self,
        openai_client: AsyncOpenAI | None = None,
        rate_limiter: RateLimiter | None = None,
        model: str | None = None,
    ):
        """Initialize analyzer with an optional SDK client.

        Args:
            openai_client: Async SDK client (defaults to the configured analyzer provider)
            rate_limiter: Token bucket guarding the provider
            model: Model name (default: settings.analyzer_model)
        """
        self.openai_client = openai_client or get_openai_client(settings.analyzer_provider)
        self.rate_limiter = rate_limiter or get_rate_limiter(settings.analyzer_provider)
        self.model = model or settings.analyzer_model

    async def analyze(self, query: str) -> QueryAnalysis:
        """Ask the analyzer model for a structured analysis of the query.

        Raises:
            AnalyzerError: if the model call fails or returns malformed JSON
        """
        await self.rate_limiter.acquire()
        try:
            response = await self.openai_client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "user", "content": f"{ANALYSIS_PROMPT}\n\nUser query: {query}"},
                ],
                max_tokens=settings.analyzer_max_tokens,
                temperature=settings.analyzer_temperature,
            )
        except Exception as e:
            raise AnalyzerError(f"query analysis call failed: {e}") from e

        if not response.choices:
            raise AnalyzerError("no content in analyzer response")

        text = (response.choices[0].message.content or "").strip()
        try:
            analysis = QueryAnalysis.model_validate_json(text)
        except ValidationError as e:
            raise AnalyzerError(f"failed to parse query analysis JSON: {e}") from e

        logger.debug("Analyzed query: %s -> %s", query, analysis.transformed_query)
        return _normalize(analysis)

    async def transform_query(self, query: str) -> str:
        """Original query followed by the analyzer's search keywords."""
        analysis = await self.analyze(query)
        return f"{query} {analysis.transformed_query}"
