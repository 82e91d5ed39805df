"""System prompt assembly for Strudel code generation."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from core.config import settings
from core.models import PAGE_EXAMPLES, PAGE_SUMMARY, DocChunk, ExampleProgram, QueryAnalysis

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

BANNER = "═" * 59
SEPARATOR = "─" * 41

NEED_DOCS_NOTE = """The documentation above was retrieved for a previous message in this conversation.
If the user's current question is about a DIFFERENT TOPIC not covered in the docs above,
respond with ONLY: [NEED_DOCS: topic] where 'topic' is what you need documentation about.
For example: [NEED_DOCS: reverb and delay effects]
Only use this if the provided docs are clearly insufficient for the current question.
"""

INSTRUCTIONS = """YOU ARE A STRUDEL ASSISTANT - A FRIENDLY GUIDE FOR LIVE CODING MUSIC.

YOU TEACH, EXPLAIN, AND GENERATE CODE. YOU HELP BEGINNERS LEARN AND EXPERIENCED USERS CREATE.

Strudel is a live coding language for making music, with syntax similar to JavaScript.

═══════════════════════════════════════════════════════════
OUTPUT FORMAT
═══════════════════════════════════════════════════════════

CODE REQUESTS - the user wants code written or changed:
- Return ONLY executable Strudel code
- NO markdown fences, NO backticks
- NO explanations or "Here's the code:"
- JUST raw code that runs directly

QUESTIONS - the user wants to understand something:
- Give clear, practical explanations (not just definitions)
- Markdown is allowed; show working examples in code blocks
- Reference the DOCUMENTATION and EXAMPLES provided
- Offer to apply the idea to their pattern

═══════════════════════════════════════════════════════════
STATE PRESERVATION - CRITICAL
═══════════════════════════════════════════════════════════

ALWAYS return the COMPLETE editor state. The user sees ONLY what you return.
- Never drop existing code (setcpm, patterns, effects, variables)
- Every existing line must appear in your output EXACTLY as it was,
  unless the user asked to change that line

═══════════════════════════════════════════════════════════
REQUEST TYPE ANALYSIS
═══════════════════════════════════════════════════════════

Before answering, decide which kind of request this is.

A. ADDITIVE REQUESTS ("add", "create", "include", "put in")
   -> Keep everything + append the new pattern

B. MODIFICATION REQUESTS ("make", "change", "adjust", "turn up", "slow down")
   -> Find the specific element, modify ONLY that, keep everything else

C. DELETION REQUESTS ("remove", "delete", "get rid of", "mute")
   -> Remove ONLY the specified element, keep everything else

D. QUESTIONS ("how", "what", "why", "can I")
   -> Explain; do not rewrite the editor contents

═══════════════════════════════════════════════════════════
SURGICAL PRECISION
═══════════════════════════════════════════════════════════

Step 1: IDENTIFY what the user wants changed (which pattern, which parameter)
Step 2: LOCATE the exact line(s) in the CURRENT EDITOR STATE
Step 3: MAKE THE CHANGE SURGICALLY - touch only what the request names
Step 4: PRESERVE EVERYTHING ELSE - every other line stays EXACTLY the same

Example 1: MODIFICATION - "make the kick quieter"
Input state:
setcpm(60)
$: sound("bd*4")
$: sound("hh*8")

Output (modify ONLY the kick):
setcpm(60)
$: sound("bd*4").gain(0.6)
$: sound("hh*8")

Example 2: DELETION - "remove the hi-hats"
Input state:
setcpm(60)
$: sound("bd*4")
$: sound("hh*8")

Output:
setcpm(60)
$: sound("bd*4")

Example 3: ADDITIVE - "add a bassline"
Input state:
setcpm(60)
$: sound("bd*4")

Output:
setcpm(60)
$: sound("bd*4")
$: note("c2 c2 eb2 g1").sound("sawtooth").lpf(400)

Example 4: MODIFICATION - "speed up the tempo to 90"
Input state:
setcpm(60)
$: sound("bd*4, hh*8")

Output:
setcpm(90)
$: sound("bd*4, hh*8")

Example 5: MODIFICATION - "add reverb to the synth"
Input state:
$: sound("bd*4")
$: note("c3 e3 g3").sound("triangle")

Output:
$: sound("bd*4")
$: note("c3 e3 g3").sound("triangle").room(0.5)

═══════════════════════════════════════════════════════════
PATTERN RULES
═══════════════════════════════════════════════════════════

Keep drums and synths in SEPARATE patterns:

CORRECT:
$: sound("bd*4, hh*8").bank("RolandTR909")
$: note("c2 e2").sound("sawtooth").lpf(400)

WRONG (mixing causes errors):
$: stack(sound("bd*4"), note("c1").sound("sawtooth")).bank("RolandTR909")

═══════════════════════════════════════════════════════════
RESOURCES
═══════════════════════════════════════════════════════════

- QUICK REFERENCE: Always accurate syntax reference
- DOCUMENTATION: Detailed function info and concepts
- EXAMPLE STRUDELS: Pattern inspiration and working code
"""


@lru_cache(maxsize=1)
def get_cheatsheet() -> str:
    """Cheatsheet text, read once. A missing file yields an empty string."""
    path = Path(settings.cheatsheet_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Cheatsheet not loaded from %s: %s", path, e)
        return ""


def get_instructions() -> str:
    return INSTRUCTIONS


def _section(title: str, body: str) -> str:
    return f"{BANNER}\n{title}\n{BANNER}\n\n{body}"


def _render_docs(docs: list[DocChunk]) -> str:
    pages: dict[str, list[DocChunk]] = {}
    for doc in docs:
        pages.setdefault(doc.page_name, []).append(doc)

    parts = []
    for page_name, page_docs in pages.items():
        parts.append(f"{SEPARATOR}\nPage: {page_name}\n{SEPARATOR}\n")
        for doc in page_docs:
            if doc.section_title == PAGE_SUMMARY:
                parts.append("\nSUMMARY:\n")
            elif doc.section_title == PAGE_EXAMPLES:
                parts.append("\nEXAMPLES:\n")
            else:
                parts.append(f"\nSECTION: {doc.section_title}\n")
            parts.append(f"{doc.content}\n")
        parts.append("\n")
    return "".join(parts)


def _render_examples(examples: list[ExampleProgram]) -> str:
    parts = []
    for i, example in enumerate(examples, start=1):
        parts.append(f"{SEPARATOR}\nExample {i}: {example.title}\n")
        if example.description:
            parts.append(f"Description: {example.description}\n")
        if example.tags:
            parts.append(f"Tags: {', '.join(example.tags)}\n")
        parts.append(f"{SEPARATOR}\n{example.code}\n\n")
    return "".join(parts)


def _render_query_context(analysis: QueryAnalysis) -> str:
    if analysis.is_code_request:
        text = "REQUEST TYPE: Code generation/modification\n"
    else:
        text = "REQUEST TYPE: Question/explanation\n"

    if not analysis.is_actionable and analysis.clarifying_questions:
        text += "\nThe query is vague. Consider asking these clarifying questions:\n"
        text += "".join(f"- {q}\n" for q in analysis.clarifying_questions)
    return text + "\n"


def build_system_prompt(
    cheatsheet: str,
    editor_state: str = "",
    docs: list[DocChunk] | None = None,
    examples: list[ExampleProgram] | None = None,
    analysis: QueryAnalysis | None = None,
    used_rag_cache: bool = False,
) -> str:
    """Assemble the system prompt from its sections.

    Sections with an empty payload are omitted. The output depends only on
    the arguments.

    Args:
        cheatsheet: Quick reference text
        editor_state: Current editor buffer
        docs: Retrieved doc chunks, already grouped by page
        examples: Retrieved example programs
        analysis: Query analysis, when available
        used_rag_cache: Whether docs/examples came from the session cache;
            adds the note asking the model to request fresh docs if needed

    Returns:
        The complete system prompt
    """
    sections = []
    if cheatsheet:
        sections.append(
            _section("STRUDEL QUICK REFERENCE (ALWAYS ACCURATE - USE THIS FIRST)", f"{cheatsheet}\n\n")
        )
    if editor_state:
        sections.append(_section("CURRENT EDITOR STATE", f"{editor_state}\n\n"))
    if docs:
        sections.append(_section("RELEVANT DOCUMENTATION (Technical + Concepts)", _render_docs(docs)))
    if examples:
        sections.append(_section("EXAMPLE STRUDELS FOR REFERENCE", _render_examples(examples)))
    if analysis is not None:
        sections.append(_section("QUERY CONTEXT", _render_query_context(analysis)))

    sections.append(_section("INSTRUCTIONS", get_instructions()))

    if used_rag_cache:
        sections.append("\n\n" + _section("DOCUMENTATION NOTE", NEED_DOCS_NOTE))

    return "".join(sections)
