from pydantic_settings import BaseSettings, SettingsConfigDict

from app.gateway.types import (
    AIProvider,
    AIServiceConfig,
    CacheConfig,
    CircuitBreakerConfig,
    LoadBalancingStrategy,
    ProviderConfig,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated, e.g. "https://app.example.com,https://admin.example.com"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Error tracking
    sentry_dsn: str = ""  # leave empty to disable

    # AI orchestration
    ai_load_balancing_strategy: LoadBalancingStrategy = LoadBalancingStrategy.PRIORITY
    ai_default_timeout: float = 30.0
    ai_max_failover_attempts: int = 0  # 0 = try every available provider

    # Circuit breaker (seconds)
    ai_circuit_breaker_failure_threshold: int = 5
    ai_circuit_breaker_recovery_timeout: float = 60.0
    ai_circuit_breaker_timeout: float = 30.0
    ai_circuit_breaker_monitoring_period: float = 300.0
    ai_rate_limit_escalation_threshold: int = 3

    # Response cache
    ai_cache_enabled: bool = True
    ai_cache_ttl: float = 300.0
    ai_cache_max_size: int = 1000


class ProviderSettings(BaseSettings):
    """Per-provider block, read with prefix AI_<PROVIDER>_ (e.g. AI_GEMINI_API_KEY)."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    enabled: bool = False
    api_key: str = ""
    base_url: str = ""
    timeout: float | None = None  # falls back to AI_DEFAULT_TIMEOUT
    rate_limit: int = 60  # requests per minute
    priority: int = 1
    weight: float = 1.0
    models: str = ""  # comma-separated allow-list


settings = Settings()


def load_provider_settings(provider: AIProvider, env_file: str | None = ".env") -> ProviderSettings:
    return ProviderSettings(_env_prefix=f"AI_{provider.value.upper()}_", _env_file=env_file)


def load_ai_service_config(
    app_settings: Settings | None = None,
    provider_settings: dict[AIProvider, ProviderSettings] | None = None,
) -> AIServiceConfig:
    """Build the immutable AIServiceConfig from settings and AI_<PROVIDER>_* variables."""
    s = app_settings or settings
    if provider_settings is None:
        provider_settings = {p: load_provider_settings(p) for p in AIProvider}

    providers = []
    for provider, ps in provider_settings.items():
        providers.append(
            ProviderConfig(
                provider=provider,
                api_key=ps.api_key,
                base_url=ps.base_url,
                timeout=ps.timeout if ps.timeout is not None else s.ai_default_timeout,
                rate_limit=ps.rate_limit,
                priority=ps.priority,
                enabled=ps.enabled,
                models=tuple(m.strip() for m in ps.models.split(",") if m.strip()),
                weight=ps.weight,
            )
        )

    return AIServiceConfig(
        providers=tuple(providers),
        load_balancing_strategy=s.ai_load_balancing_strategy,
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=s.ai_circuit_breaker_failure_threshold,
            recovery_timeout=s.ai_circuit_breaker_recovery_timeout,
            request_timeout=s.ai_circuit_breaker_timeout,
            monitoring_period=s.ai_circuit_breaker_monitoring_period,
            rate_limit_escalation_threshold=s.ai_rate_limit_escalation_threshold,
        ),
        cache=CacheConfig(
            enabled=s.ai_cache_enabled,
            ttl=s.ai_cache_ttl,
            max_size=s.ai_cache_max_size,
        ),
        max_failover_attempts=s.ai_max_failover_attempts or None,
    )


def validate_ai_service_config(config: AIServiceConfig) -> list[str]:
    """Return configuration errors; an empty list means the config is usable.

    No enabled providers is valid (degraded mode) and not reported.
    """
    errors: list[str] = []

    for p in config.providers:
        name = p.provider.value.upper()
        if p.enabled and not p.api_key and p.provider != AIProvider.MOCK:
            errors.append(f"AI_{name}_API_KEY must be set when AI_{name}_ENABLED is true")
        if p.priority < 0:
            errors.append(f"AI_{name}_PRIORITY must not be negative")
        if p.rate_limit < 1:
            errors.append(f"AI_{name}_RATE_LIMIT must be at least 1")
        if p.weight <= 0:
            errors.append(f"AI_{name}_WEIGHT must be positive")
        if p.timeout <= 0:
            errors.append(f"AI_{name}_TIMEOUT must be positive")

    cb = config.circuit_breaker
    if cb.failure_threshold < 1:
        errors.append("AI_CIRCUIT_BREAKER_FAILURE_THRESHOLD must be at least 1")
    if cb.recovery_timeout < 1:
        errors.append("AI_CIRCUIT_BREAKER_RECOVERY_TIMEOUT must be at least 1 second")
    if cb.request_timeout <= 0:
        errors.append("AI_CIRCUIT_BREAKER_TIMEOUT must be positive")
    if cb.rate_limit_escalation_threshold < 0:
        errors.append("AI_RATE_LIMIT_ESCALATION_THRESHOLD must not be negative")

    if config.cache.max_size < 1:
        errors.append("AI_CACHE_MAX_SIZE must be at least 1")
    if config.cache.ttl < 1:
        errors.append("AI_CACHE_TTL must be at least 1 second")

    return errors


def validate_settings_for_production(config: AIServiceConfig | None = None) -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors = validate_ai_service_config(config or load_ai_service_config())

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
