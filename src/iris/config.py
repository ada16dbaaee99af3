from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Remote vision endpoint (Azure OpenAI style chat completions)
    vision_endpoint: str = "https://example.openai.azure.com"
    vision_api_key: str = ""
    vision_deployment: str = "gpt-4o"
    vision_api_version: str = "2024-10-21"
    vision_max_tokens: int = 1500
    vision_temperature: float = 0.1
    vision_timeout: float = 30.0  # 单次调用墙钟超时，超时视为可重试的瞬时错误
    vision_seed: int | None = None
    vision_strict_schema: bool = False

    # Moderation
    moderation_enabled: bool = True
    moderation_strict_mode: bool = False
    # strict 模式下的显式放行开关，仅对成年受众生效；未成年人始终 fail-closed
    moderation_fail_open: bool = False
    moderation_deployment: str | None = None  # defaults to vision_deployment
    moderation_max_tokens: int = 300
    content_safety_endpoint: str | None = None
    content_safety_key: str | None = None

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_fallback_ttl_seconds: int = 300
    cache_blocked_ttl_seconds: int = 300
    cache_max_entries: int = 1000
    schema_version: str = "2"

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 60.0

    # Retry (exponential backoff: base * 2^attempt, capped)
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.1
    retry_allow_degradation: bool = True

    # Video two-pass analysis
    video_two_pass_threshold: int = 10
    video_uncertainty_threshold: int = 3
    video_pass1_target_frames: int = 8
    video_pass1_max_tokens: int = 800
    video_pass2_max_tokens: int = 1200
    video_max_frames: int = 120

    # Media library
    media_library_dir: Path = Path("./data/library")
    max_images_per_request: int = Field(default=10, ge=1, le=10)

    # CORS
    cors_origins: list[str] = ["http://localhost:5173"]

    @property
    def resolved_moderation_deployment(self) -> str:
        return self.moderation_deployment or self.vision_deployment

    @property
    def moderation_may_fail_open(self) -> bool:
        """Whether an adult request may proceed when the classifier is down."""
        return not self.moderation_strict_mode or self.moderation_fail_open


settings = Settings()
