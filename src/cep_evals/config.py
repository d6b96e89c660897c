"""Configuration for the CEP eval harness.

Process-wide settings come from ``EvalConfig`` (environment variables with
the ``CEP_EVAL_`` prefix or a ``.env.eval`` file). Everything that changes
between runs of a sweep lives in ``RunOptions``, an immutable value built
fresh for every run from a ``RunConfiguration`` preset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cep_evals.errors import ConfigurationError


class LLMProvider(str, Enum):
    """LLM provider for the semantic evidence judge."""

    OPENAI = "openai"
    VLLM = "vllm"
    AZURE = "azure"
    ANTHROPIC = "anthropic"
    ANTHROPIC_VERTEX = "anthropic-vertex"
    GOOGLE_GENAI = "google-genai"
    GOOGLE_VERTEX = "google-vertex"


class LogLevel(str, Enum):
    """Logging level for the CLI."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class RunMode(str, Enum):
    """Named run configuration preset."""

    FIXTURE_WITH_JUDGE = "fixture-with-judge"
    FIXTURE_WITHOUT_JUDGE = "fixture-without-judge"
    LIVE_WITH_JUDGE = "live-with-judge"
    LIVE_WITHOUT_JUDGE = "live-without-judge"


class EvalConfig(BaseSettings):
    """Configuration for CEP eval runs.

    Loaded from environment variables with CEP_EVAL_ prefix
    or from a .env.eval file.
    """

    model_config = SettingsConfigDict(
        env_prefix="CEP_EVAL_",
        env_file=".env.eval",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Target chat service
    chat_url: str = Field(
        default="http://localhost:3100/api/chat",
        description="Chat endpoint of the service under test",
    )
    test_header: str = Field(
        default="X-Test-Bypass",
        description="Header that tags requests as eval traffic",
    )
    request_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Per-request timeout in seconds",
    )

    # Retry policy
    max_retries: int = Field(default=6, ge=0, le=20, description="Retries on 429, 502, 503 and 504")
    retry_initial_delay: float = Field(default=0.6, ge=0.0, description="First backoff delay (s)")
    retry_max_delay: float = Field(default=5.0, ge=0.0, description="Backoff delay cap (s)")
    retry_factor: float = Field(default=1.8, ge=1.0, description="Backoff multiplier")
    retry_jitter: float = Field(default=0.2, ge=0.0, description="Maximum random jitter (s)")

    # Readiness probe
    readiness_attempts: int = Field(default=8, ge=1, description="Liveness probe attempts")
    readiness_delay: float = Field(default=0.25, ge=0.0, description="Delay between probes (s)")

    # Files
    root_dir: Path = Field(default=Path("."), description="Base directory for case files")
    registry_path: Path = Field(
        default=Path("evals/registry.json"),
        description="Case catalog (JSON or YAML)",
    )
    fixtures_dir: Path = Field(
        default=Path("evals/fixtures"),
        description="Directory holding base/ and per-case fixture overrides",
    )
    reports_dir: Path = Field(
        default=Path("evals/reports"),
        description="Report store directory",
    )

    # Execution
    case_pause: float = Field(
        default=0.25,
        ge=0.0,
        description="Pause before each case in serial mode (s)",
    )
    inject_prompt: bool = Field(
        default=False,
        description="Serialize fixture documents into the prompt text",
    )
    verbose: bool = Field(default=False, description="Log one detailed line per case")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")

    # Target lifecycle
    manage_server: bool = Field(
        default=True,
        description="Start the local target service before a sweep",
    )
    server_command: str = Field(
        default="bun run dev",
        description="Command that starts the local target service",
    )
    server_start_attempts: int = Field(default=60, ge=1, description="Startup probes")
    server_start_delay: float = Field(default=0.5, ge=0.0, description="Delay between startup probes (s)")

    # Judge LLM settings
    judge_provider: LLMProvider = Field(
        default=LLMProvider.GOOGLE_GENAI,
        description="LLM provider for the evidence judge",
    )
    judge_model: str = Field(
        default="gemini-2.0-flash-001",
        description="Model name for the evidence judge",
    )
    judge_api_key: str = Field(default="", description="API key for the judge LLM")
    judge_base_url: str | None = Field(
        default=None,
        description="Base URL for vLLM or Azure judge endpoints",
    )
    judge_batch_size: int = Field(
        default=10,
        ge=1,
        le=10,
        description="Cases per judge request",
    )

    # Vertex AI settings (for anthropic-vertex and google-vertex providers)
    vertex_project_id: str | None = Field(
        default=None,
        description="Google Cloud project ID for Vertex AI",
    )
    vertex_location: str = Field(
        default="us-central1",
        description="Google Cloud region for Vertex AI",
    )


@dataclass(frozen=True)
class RunConfiguration:
    """Fixed environment preset for one run mode."""

    mode: RunMode
    name: str
    description: str
    use_base: bool
    use_fixtures: bool
    llm_judge: bool
    serial: bool


RUN_CONFIGURATIONS: tuple[RunConfiguration, ...] = (
    RunConfiguration(
        mode=RunMode.FIXTURE_WITH_JUDGE,
        name="Fixture Mode + LLM Judge",
        description="Fixture data for deterministic results, LLM judge for semantic evidence",
        use_base=True,
        use_fixtures=True,
        llm_judge=True,
        serial=True,
    ),
    RunConfiguration(
        mode=RunMode.FIXTURE_WITHOUT_JUDGE,
        name="Fixture Mode (No Judge)",
        description="Fixture data for deterministic results, string matching only",
        use_base=True,
        use_fixtures=True,
        llm_judge=False,
        serial=True,
    ),
    RunConfiguration(
        mode=RunMode.LIVE_WITH_JUDGE,
        name="Live Mode + LLM Judge",
        description="Live backend data, LLM judge for semantic evidence",
        use_base=False,
        use_fixtures=False,
        llm_judge=True,
        serial=True,
    ),
    RunConfiguration(
        mode=RunMode.LIVE_WITHOUT_JUDGE,
        name="Live Mode (No Judge)",
        description="Live backend data, string matching only",
        use_base=False,
        use_fixtures=False,
        llm_judge=False,
        serial=True,
    ),
)

DEFAULT_MODES: tuple[RunMode, ...] = (RunMode.FIXTURE_WITH_JUDGE, RunMode.FIXTURE_WITHOUT_JUDGE)


def get_configuration(mode: RunMode | str) -> RunConfiguration:
    """Look up the preset for a run mode.

    Raises:
        ConfigurationError: If the mode is unknown.
    """
    try:
        run_mode = RunMode(mode)
    except ValueError as e:
        raise ConfigurationError(f"Unknown run mode: {mode}") from e
    for configuration in RUN_CONFIGURATIONS:
        if configuration.mode == run_mode:
            return configuration
    raise ConfigurationError(f"Unknown run mode: {mode}")


def _split_csv(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class CaseFilter:
    """Case selection: id, category and tag allow-lists plus a limit."""

    ids: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    limit: int | None = None

    @classmethod
    def from_strings(
        cls,
        ids: str | None = None,
        categories: str | None = None,
        tags: str | None = None,
        limit: str | int | None = None,
    ) -> CaseFilter:
        """Build a filter from comma-separated CLI values.

        A limit that is not a positive integer means no limit.
        """
        parsed_limit: int | None = None
        if limit is not None and str(limit).strip():
            try:
                parsed_limit = int(str(limit).strip())
            except ValueError:
                parsed_limit = None
            if parsed_limit is not None and parsed_limit <= 0:
                parsed_limit = None
        return cls(
            ids=_split_csv(ids),
            categories=_split_csv(categories),
            tags=_split_csv(tags),
            limit=parsed_limit,
        )


@dataclass(frozen=True)
class RunOptions:
    """Everything one run needs to know about its mode, built per run."""

    mode: RunMode | None = None
    use_base: bool = False
    use_fixtures: bool = False
    llm_judge: bool = True
    parallel: bool = True
    case_filter: CaseFilter = field(default_factory=CaseFilter)

    @classmethod
    def for_mode(
        cls,
        mode: RunMode | str,
        case_filter: CaseFilter | None = None,
    ) -> RunOptions:
        """Build options from a mode preset plus case filters."""
        configuration = get_configuration(mode)
        return cls(
            mode=configuration.mode,
            use_base=configuration.use_base,
            use_fixtures=configuration.use_fixtures,
            llm_judge=configuration.llm_judge,
            parallel=not configuration.serial,
            case_filter=case_filter or CaseFilter(),
        )

    @property
    def label(self) -> str:
        """Mode name used in logs and reports."""
        return self.mode.value if self.mode else "default"
