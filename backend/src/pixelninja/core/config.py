"""Application configuration using Pydantic BaseSettings."""

import json
import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pixelninja.models.task import Stage

# Per-stage timeouts in milliseconds
DEFAULT_STAGE_TIMEOUTS_MS: dict[Stage, int] = {
    Stage.ART: 120_000,
    Stage.METADATA: 10_000,
    Stage.IPFS: 60_000,
    Stage.TOKENURI: 180_000,
}


def parse_stage_timeouts(raw: str) -> dict[Stage, int]:
    """Parse STAGE_TIMEOUTS_MS into a full stage -> milliseconds table.

    Accepts a JSON object (``{"ART": 90000}``) or a comma list (``ART=90000,IPFS=30000``).
    Stages that are not mentioned keep their defaults.

    Raises:
        ValueError: Unknown stage name or non-positive value
    """
    timeouts = dict(DEFAULT_STAGE_TIMEOUTS_MS)
    raw = raw.strip()
    if not raw:
        return timeouts

    if raw.startswith("{"):
        overrides = json.loads(raw)
    else:
        overrides = {}
        for item in raw.split(","):
            if not item.strip():
                continue
            name, sep, value = item.partition("=")
            if not sep:
                raise ValueError(f"STAGE_TIMEOUTS_MS entry '{item}' is not NAME=MILLIS")
            overrides[name.strip()] = value.strip()

    for name, value in overrides.items():
        try:
            stage = Stage(name.upper())
        except ValueError:
            raise ValueError(f"STAGE_TIMEOUTS_MS names unknown stage '{name}'") from None
        if stage not in DEFAULT_STAGE_TIMEOUTS_MS:
            raise ValueError(f"Stage {stage.value} has no timeout")
        millis = int(value)
        if millis <= 0:
            raise ValueError(f"STAGE_TIMEOUTS_MS for {stage.value} must be positive")
        timeouts[stage] = millis
    return timeouts


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Chain
    rpc_url: str = Field(default="", alias="RPC_URL")
    chain_id: int = Field(default=0, alias="CHAIN_ID")
    contract_address: str = Field(default="", alias="CONTRACT_ADDRESS")
    signer_key: str = Field(default="", alias="SIGNER_KEY")
    transaction_timeout_seconds: int = Field(default=180, alias="TRANSACTION_TIMEOUT_SECONDS")
    gas_buffer: float = Field(default=1.2, alias="GAS_BUFFER")

    # IPFS pinning
    ipfs_endpoint: str = Field(default="https://api.pinata.cloud", alias="IPFS_ENDPOINT")
    ipfs_jwt: str = Field(default="", alias="IPFS_JWT")
    ipfs_gateway: str = Field(default="gateway.pinata.cloud", alias="IPFS_GATEWAY")

    # Image providers (an empty key disables the provider)
    openai_key: str = Field(default="", alias="OPENAI_KEY")
    stability_key: str = Field(default="", alias="STABILITY_KEY")
    huggingface_key: str = Field(default="", alias="HUGGINGFACE_KEY")
    default_provider: str = Field(default="dalle", alias="DEFAULT_PROVIDER")

    # Pipeline
    max_concurrent_tasks: int = Field(default=4, ge=1, alias="MAX_CONCURRENT_TASKS")
    stage_timeouts_ms: str = Field(default="", alias="STAGE_TIMEOUTS_MS")
    task_deadline_seconds: float = Field(default=120, gt=0, alias="TASK_DEADLINE_SECONDS")
    max_stage_attempts: int = Field(default=3, ge=1, alias="MAX_STAGE_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=2, ge=0, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=30, ge=0, alias="RETRY_MAX_DELAY_SECONDS")

    # Event watcher
    backfill_chunk_blocks: int = Field(default=2000, ge=1, alias="BACKFILL_CHUNK_BLOCKS")
    start_block: int | None = Field(default=None, alias="START_BLOCK")
    poll_interval_seconds: float = Field(default=5, gt=0, alias="POLL_INTERVAL_SECONDS")

    # Task store
    database_url: str = Field(default="", alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")
    # In-memory store only; dedup keys of evicted tasks are kept up to 10x this many
    task_retention: int = Field(default=10_000, ge=1, alias="TASK_RETENTION")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def stage_timeouts(self) -> dict[Stage, float]:
        """Per-stage timeouts in seconds."""
        return {
            stage: millis / 1000 for stage, millis in parse_stage_timeouts(self.stage_timeouts_ms).items()
        }

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with one aggregated message if the pipeline cannot run.
        Required-variable checks are skipped in test environments; malformed
        values are rejected everywhere.
        """
        parse_stage_timeouts(self.stage_timeouts_ms)

        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.rpc_url:
            missing.append("RPC_URL: JSON-RPC endpoint of the chain the NFT contract lives on")

        if not self.chain_id:
            missing.append("CHAIN_ID: Numeric chain id the RPC endpoint must report")

        if not self.contract_address:
            missing.append("CONTRACT_ADDRESS: Address of the Pixel Ninja NFT contract")

        if not self.signer_key:
            missing.append("SIGNER_KEY: Private key allowed to call setTokenURI")

        if not (self.openai_key or self.stability_key or self.huggingface_key):
            missing.append("OPENAI_KEY, STABILITY_KEY or HUGGINGFACE_KEY: At least one image provider")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        renderer = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
