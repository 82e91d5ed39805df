"""Classification of generator output and retry prompt formatting."""

from __future__ import annotations

import re

from core.models import ValidationResult

FENCE = "```"

# substrings that only appear in actual Strudel code
CODE_MARKERS = (
    "$:",
    "setcpm(",
    'sound("',
    'note("',
    "stack(",
    's("',
    'n("',
    ").fast(",
    ").slow(",
    ").gain(",
    ").lpf(",
    ").hpf(",
    ").room(",
    ").delay(",
    ").bank(",
)

NEED_DOCS_RE = re.compile(r"\s*\[NEED_DOCS:\s*([^\]\n]*?)\s*\]\s*")

CONVERSATIONAL_PHRASES = frozenset(
    {
        "hi",
        "hello",
        "hey",
        "hey there",
        "hi there",
        "hello there",
        "yo",
        "good morning",
        "good afternoon",
        "good evening",
        "thanks",
        "thank you",
        "thanks a lot",
        "thank you so much",
        "thanks so much",
        "thx",
        "ty",
        "cheers",
        "ok",
        "okay",
        "ok thanks",
        "okay thanks",
        "cool",
        "nice",
        "great",
        "awesome",
        "perfect",
        "got it",
        "sounds good",
        "bye",
        "goodbye",
        "see you",
    }
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

RETRY_PROMPT = """
the code you generated has a syntax error and will not run: {numbered_code}.
Error: {error}.
please fix the error and return only the corrected strudel code.
do not include any explanation or line numbers."""


def has_code_patterns(text: str) -> bool:
    return any(marker in text for marker in CODE_MARKERS)


def extract_code_from_fence(text: str) -> str:
    """Inner text of the first fenced block, skipping the language line.

    Returns an empty string when there is no complete fence.
    """
    start = text.find(FENCE)
    if start == -1:
        return ""

    newline = text.find("\n", start + len(FENCE))
    if newline == -1:
        return ""

    code_start = newline + 1
    end = text.find(FENCE, code_start)
    if end == -1:
        return ""

    return text[code_start:end].strip()


def analyze_response(text: str) -> tuple[str, bool]:
    """Decide whether generator output is code and extract it.

    - no fences: the trimmed text, code if it carries Strudel code markers
    - exactly one fence pair: the fenced code
    - anything else (unbalanced or several blocks): prose, kept as-is

    Returns:
        (content, is_code)
    """
    if not text:
        return "", False

    fence_count = text.count(FENCE)
    if fence_count == 0:
        return text.strip(), has_code_patterns(text)

    if fence_count == 2:
        code = extract_code_from_fence(text)
        if code:
            return code, True

    return text.strip(), False


def parse_need_docs_marker(text: str) -> str:
    """Topic of a `[NEED_DOCS: topic]` response, or "" if it is not one.

    Only a response consisting of the marker alone counts.
    """
    match = NEED_DOCS_RE.fullmatch(text)
    if not match:
        return ""
    return match.group(1)


def is_conversational_query(query: str) -> bool:
    """True for greetings, thanks and acknowledgements that need no retrieval."""
    normalized = " ".join(_PUNCTUATION_RE.sub(" ", query.lower()).split())
    return normalized in CONVERSATIONAL_PHRASES


def add_line_numbers(code: str) -> str:
    return "".join(f"{i:3d} | {line}\n" for i, line in enumerate(code.split("\n"), start=1))


def format_retry_prompt(invalid_code: str, result: ValidationResult) -> str:
    """User turn asking the model to fix code that failed validation."""
    return RETRY_PROMPT.format(
        numbered_code=add_line_numbers(invalid_code),
        error=result.located_error,
    )
