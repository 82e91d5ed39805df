"""Exception hierarchy for the code assistant core.

Core operations raise these to the caller (the transport layer). They carry
no HTTP semantics; mapping to status codes happens outside the core.
"""

from __future__ import annotations


class CodeAssistError(Exception):
    """Base class for all core errors."""


class ConfigError(CodeAssistError):
    """Required configuration is missing or invalid. Fatal at startup."""


class RetrieverError(CodeAssistError):
    """Corpus-store retrieval failed."""


class PrimarySearchError(RetrieverError):
    """The primary search of a hybrid query failed; the turn aborts."""


class AuxiliarySearchError(RetrieverError):
    """A contextual search or special-chunk fetch failed; logged, turn continues."""


class AnalyzerError(CodeAssistError):
    """The query analyzer call failed or returned malformed JSON."""


class GeneratorError(CodeAssistError):
    """The text generator call failed."""


class CodeValidationError(CodeAssistError):
    """The code validator could not produce a verdict."""


class CacheError(CodeAssistError):
    """A RAG cache read or write failed."""


class SessionError(CodeAssistError):
    """Anonymous session lookup failed."""


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str):
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class SessionExpiredError(SessionError):
    def __init__(self, session_id: str):
        super().__init__(f"session expired: {session_id}")
        self.session_id = session_id
