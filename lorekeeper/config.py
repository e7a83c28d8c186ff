from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from lorekeeper.models import ScoreCategory


class _CsvListParseMixin:
    """Mixin that parses comma-separated env strings for designated list fields."""

    _CSV_LIST_FIELDS: frozenset[str] = frozenset({"backends"})

    def prepare_field_value(
        self, field_name: str, field: Any, value: Any, value_is_complex: bool
    ) -> Any:
        if field_name in self._CSV_LIST_FIELDS and isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()] if value else []
        return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]


class _CsvAwareEnvSource(_CsvListParseMixin, EnvSettingsSource):
    pass


class _CsvAwareDotEnvSource(_CsvListParseMixin, DotEnvSettingsSource):
    pass


def _default_file_patterns() -> dict[str, float]:
    return {
        "migrations/": 1.0,
        "schema/": 1.0,
        "core/": 1.0,
        "lib/fundamentals/": 1.0,
        "security/": 1.0,
        "src/": 0.8,
        "app/models/": 0.8,
        "app/controllers/": 0.8,
        "config/": 0.8,
        "tests/": 0.5,
        "specs/": 0.5,
        "test/": 0.5,
        "spec/": 0.5,
        "docs/architecture/": 0.5,
        "docs/": 0.3,
        "README": 0.3,
        "examples/": 0.3,
        ".gitignore": 0.1,
        ".editorconfig": 0.1,
    }


def _default_message_keywords() -> dict[str, float]:
    return {
        "breaking change": 1.0,
        "security fix": 1.0,
        "cve-": 1.0,
        "vulnerability": 1.0,
        "refactor": 0.8,
        "architecture": 0.8,
        "migration": 0.8,
        "deprecate": 0.8,
        "feature": 0.6,
        "enhancement": 0.6,
        "optimize": 0.6,
        "performance": 0.6,
        "fix": 0.4,
        "bug": 0.4,
        "update": 0.4,
        "typo": 0.2,
        "whitespace": 0.2,
        "formatting": 0.2,
        "docs": 0.2,
    }


class ScoringConfig(BaseModel):
    diff_weight: float = 0.3
    pattern_weight: float = 0.4
    message_weight: float = 0.3
    file_patterns: dict[str, float] = Field(default_factory=_default_file_patterns)
    message_keywords: dict[str, float] = Field(default_factory=_default_message_keywords)
    doc_extensions: list[str] = Field(default_factory=lambda: [".md", ".txt", ".rst"])


class HttpBackendConfig(BaseModel):
    """An OpenAI-compatible chat completions endpoint."""

    base_url: str
    model: str
    api_key: str = ""
    temperature: float = 0.2
    path: str = "/chat/completions"


class LorekeeperConfig(BaseSettings):
    knowledge_dir: str = ".lorekeeper"
    mock_mode: bool = False

    # Backends
    backends: list[str] = Field(default_factory=lambda: ["claude", "codex", "gemini"])
    backend_commands: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "claude": ["claude", "-p", "--output-format", "json", "{prompt}"],
            "codex": ["codex", "exec", "--json", "-s", "read-only", "{prompt}"],
            "gemini": ["npx", "@google/gemini-cli", "{prompt}"],
        }
    )
    backend_output_modes: dict[str, str] = Field(
        default_factory=lambda: {
            "claude": "json-stdout",
            "codex": "json-stderr",
            "gemini": "text",
        }
    )
    backend_timeouts: dict[str, float] = Field(
        default_factory=lambda: {"claude": 30.0, "codex": 120.0, "gemini": 300.0}
    )
    default_timeout_seconds: float = 120.0
    http_backends: dict[str, HttpBackendConfig] = Field(default_factory=dict)

    # Consensus voting
    backend_weights: dict[str, float] = Field(
        default_factory=lambda: {"claude": 1.2, "gemini": 1.1, "codex": 1.0}
    )
    default_backend_weight: float = 1.0
    majority_threshold: float = 2.0

    # Client resilience
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_jitter_max_seconds: float = 1.0
    retry_after_cap_seconds: float = 60.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown_seconds: int = 30

    # History
    skip_merges: bool = True
    commit_limit: int | None = None
    min_significance: ScoreCategory = ScoreCategory.MEDIUM
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)

    model_config = SettingsConfigDict(
        env_prefix="LOREKEEPER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        toml_file=".lorekeeper/config.toml",
        extra="ignore",
    )

    @field_validator("backends", mode="before")
    @classmethod
    def parse_backends(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [b.strip() for b in v.split(",") if b.strip()]
        return v

    @field_validator("min_significance", mode="before")
    @classmethod
    def normalize_min_significance(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def timeout_for(self, backend: str) -> float:
        return self.backend_timeouts.get(backend, self.default_timeout_seconds)

    def weight_for(self, backend: str) -> float:
        return self.backend_weights.get(backend.lower(), self.default_backend_weight)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        return (
            init_settings,
            _CsvAwareEnvSource(settings_cls),
            _CsvAwareDotEnvSource(
                settings_cls,
                env_file=settings_cls.model_config.get("env_file"),
                env_file_encoding=settings_cls.model_config.get("env_file_encoding"),
            ),
            _CsvAwareDotEnvSource(
                settings_cls,
                env_file=".env.local",
                env_file_encoding=settings_cls.model_config.get("env_file_encoding"),
            ),
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )
