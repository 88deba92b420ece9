"""Configuration schema using Pydantic.

Single data model and defaults for remedybot, persisted to ~/.remedybot/config.json.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings


class QueueConfig(BaseModel):
    """Durable stream and worker loop settings."""
    db_path: str = "~/.remedybot/queue.db"
    stream: str = "agents"
    group: str = "remedybot-workers"
    results_stream: str = "agent-results"
    dead_letter_stream: str = "agents-dlq"
    batch_size: int = 10
    block_ms: int = 5000  # bounded poll timeout while waiting for entries
    error_pause_s: float = 2.0  # pause after a loop-level exception
    claim_idle_ms: int = 60_000  # pending entries idle this long are reclaimed on startup
    max_len: int = 10_000  # acknowledged entries beyond this are trimmed; 0 disables
    results_max_len: int = 10_000


class RetryConfig(BaseModel):
    """Exponential backoff and dead-letter ceiling."""
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.0  # +/- fraction applied to each delay; 0 keeps delays monotonic


class SandboxDefaults(BaseModel):
    """Defaults merged under each request's sandbox settings."""
    enabled: bool = False
    runner_path: str | None = None
    timeout_ms: int = 15 * 60 * 1000
    fail_mode: Literal["fail", "warn"] = "fail"
    isolation_profile: Literal["strict", "permissive"] = "strict"
    image: str | None = None
    runtime: str | None = None
    use_container: bool = True
    force_container_available: bool = False
    probe_timeout_s: float = 2.0


class PolicyConfig(BaseModel):
    """Default execution policy applied when a request carries none."""
    allowed_agents: list[str] | None = None  # None allows every registered kind
    forbidden_keywords: list[str] = Field(default_factory=list)
    require_approval_for: list[str] = Field(default_factory=lambda: ["executor"])


class LoggingConfig(BaseModel):
    """Log level and optional rotating file under ~/.remedybot/logs."""
    level: str = "INFO"
    file: str | None = None


class Config(BaseSettings):
    """Root configuration for remedybot."""
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sandbox: SandboxDefaults = Field(default_factory=SandboxDefaults)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def queue_db_path(self) -> Path:
        """Expanded sqlite path for the durable stream."""
        return Path(self.queue.db_path).expanduser()

    def sandbox_config(self):
        """Configured sandbox defaults as a SandboxConfig."""
        from remedybot.sandbox.models import SandboxConfig

        data = self.sandbox.model_dump(exclude={"probe_timeout_s"})
        return SandboxConfig.model_validate({k: v for k, v in data.items() if v is not None})

    def execution_policy(self):
        """Configured default ExecutionPolicy."""
        from remedybot.orchestrator.models import ExecutionPolicy

        return ExecutionPolicy.model_validate(self.policy.model_dump())

    model_config = ConfigDict(
        env_prefix="REMEDYBOT_",
        env_nested_delimiter="__",
    )
