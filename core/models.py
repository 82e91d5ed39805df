"""Data models for the code assistant pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

PAGE_SUMMARY = "PAGE_SUMMARY"
PAGE_EXAMPLES = "PAGE_EXAMPLES"
SPECIAL_SECTIONS = (PAGE_SUMMARY, PAGE_EXAMPLES)


class DocChunk(BaseModel):
    """A passage of documentation, or a whole-page synthetic chunk."""

    id: str
    page_name: str = ""
    page_url: str = ""
    section_title: str = ""
    content: str = ""
    similarity: float = 0.0

    @property
    def is_special(self) -> bool:
        return self.section_title in SPECIAL_SECTIONS


class ExampleProgram(BaseModel):
    """A curated example program."""

    id: str
    title: str = ""
    description: str = ""
    code: str = ""
    tags: list[str] = Field(default_factory=list)
    author_name: str = ""
    url: str = ""
    similarity: float = 0.0


class QueryAnalysis(BaseModel):
    """Structured classification of a user query."""

    transformed_query: str = ""
    is_actionable: bool = True
    is_code_request: bool = True
    concrete_requests: list[str] = Field(default_factory=list)
    clarifying_questions: list[str] = Field(default_factory=list)


class Message(BaseModel):
    """Single conversation turn."""

    role: Literal["user", "assistant"]
    content: str


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class TextGenerationRequest(BaseModel):
    system_prompt: str = ""
    messages: list[Message] = Field(default_factory=list)
    max_tokens: int = 0


class TextGenerationResponse(BaseModel):
    text: str = ""
    usage: Usage = Field(default_factory=Usage)


class ValidationResult(BaseModel):
    """Verdict of the external code evaluator."""

    valid: bool
    error: str = ""
    line: int | None = None
    column: int | None = None

    @property
    def located_error(self) -> str:
        if self.line is None:
            return self.error
        if self.column is None:
            return f"{self.error} (line {self.line})"
        return f"{self.error} (line {self.line}, column {self.column})"


class DocReference(BaseModel):
    page_name: str
    section_title: str = ""
    url: str = ""


class ProgramReference(BaseModel):
    id: str
    title: str = ""
    author_name: str = ""
    url: str = ""


class CachedRAGResult(BaseModel):
    """Docs and examples retrieved for a session, reused on follow-up turns."""

    query: str = ""
    docs: list[DocChunk] = Field(default_factory=list)
    examples: list[ExampleProgram] = Field(default_factory=list)

    @classmethod
    def from_results(
        cls, query: str, docs: list[DocChunk], examples: list[ExampleProgram]
    ) -> CachedRAGResult:
        # similarity and author are search-time attributes and are not cached
        return cls(
            query=query,
            docs=[
                DocChunk(
                    id=d.id,
                    page_name=d.page_name,
                    page_url=d.page_url,
                    section_title=d.section_title,
                    content=d.content,
                )
                for d in docs
            ],
            examples=[
                ExampleProgram(
                    id=e.id,
                    title=e.title,
                    description=e.description,
                    code=e.code,
                    tags=list(e.tags),
                    url=e.url,
                )
                for e in examples
            ],
        )


class GenerateRequest(BaseModel):
    """All inputs for one generation turn."""

    user_query: str = Field(min_length=1)
    editor_state: str = ""
    conversation_history: list[Message] = Field(default_factory=list)
    session_id: str | None = None
    # caller-supplied generator (BYOK); typed loosely to avoid an import cycle
    custom_generator: Any = None


class GenerateResponse(BaseModel):
    """Generated code or prose plus retrieval metadata."""

    content: str = ""
    is_code_response: bool = False
    is_actionable: bool = True
    clarifying_questions: list[str] = Field(default_factory=list)
    docs_retrieved: int = 0
    examples_retrieved: int = 0
    doc_references: list[DocReference] = Field(default_factory=list)
    program_references: list[ProgramReference] = Field(default_factory=list)
    model: str = ""
    usage: Usage = Field(default_factory=Usage)
    did_retry: bool = False
    validation_error: str = ""

    # kept for attribution tracking, not serialized
    docs: list[DocChunk] = Field(default_factory=list, exclude=True)
    examples: list[ExampleProgram] = Field(default_factory=list, exclude=True)


class StreamEvent(BaseModel):
    """One event of a streaming generation turn."""

    type: Literal["refs", "chunk", "done", "error"]
    content: str = ""
    error: str = ""
    doc_references: list[DocReference] = Field(default_factory=list)
    program_references: list[ProgramReference] = Field(default_factory=list)
    model: str = ""
    is_code_response: bool = False
    usage: Usage | None = None


class ParsedCode(BaseModel):
    """Elements extracted from DSL source by the regex parser."""

    sounds: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)
    variables: list[str] = Field(default_factory=list)
    scales: list[str] = Field(default_factory=list)
    patterns: dict[str, int] = Field(default_factory=dict)


class CodeAnalysis(BaseModel):
    sound_tags: list[str] = Field(default_factory=list)
    effect_tags: list[str] = Field(default_factory=list)
    musical_tags: list[str] = Field(default_factory=list)
    complexity_tags: list[str] = Field(default_factory=list)
    complexity: int = 0
    line_count: int = 0
    function_count: int = 0
    variable_count: int = 0
