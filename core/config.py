"""Code assistant configuration via Pydantic settings."""

from pydantic_settings import BaseSettings

from core.errors import ConfigError


class Settings(BaseSettings):
    # Provider keys
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # Query analyzer
    analyzer_provider: str = "anthropic"  # "anthropic" or "openai"
    analyzer_model: str = "claude-3-haiku-20240307"
    analyzer_max_tokens: int = 200
    analyzer_temperature: float = 0.3

    # Code generator
    generator_provider: str = "anthropic"
    generator_model: str = "claude-sonnet-4-20250514"
    generator_max_tokens: int = 4096
    generator_temperature: float = 0.7
    generator_timeout_seconds: float = 60.0

    # Embeddings
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Neo4j corpus store
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = "strudel_corpus_2026"

    # Retrieval
    top_k: int = 5
    docs_top_k: int = 3
    examples_top_k: int = 2
    primary_k_slack: int = 2
    page_examples_max_chars: int = 500
    use_lexical_search: bool = False
    dense_weight: float = 0.70
    lexical_weight: float = 0.30

    # Provider rate limiting (token bucket)
    rate_limit_rps: float = 50.0
    rate_limit_burst: int = 10

    # Shared HTTP pool
    http_timeout_seconds: float = 60.0
    http_connect_timeout_seconds: float = 10.0
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 10
    http_keepalive_expiry_seconds: float = 90.0

    # Code validator (external evaluator, optional)
    validator_command: str = ""
    validator_timeout_seconds: float = 10.0

    # Anonymous sessions
    session_ttl_hours: float = 24.0
    session_sweep_interval_seconds: float = 3600.0

    # Prompt
    cheatsheet_path: str = "resources/cheatsheet.md"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def require_provider_key(self, provider: str) -> str:
        """Return the API key for a provider, failing fast when it is missing."""
        if provider == "openai":
            key = self.openai_api_key
        elif provider == "anthropic":
            key = self.anthropic_api_key
        else:
            raise ConfigError(f"unsupported provider: {provider}")

        if not key:
            raise ConfigError(f"{provider.upper()}_API_KEY environment variable is required")
        return key


settings = Settings()
