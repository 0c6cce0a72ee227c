"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # Proxy/Load Balancer Settings
    # Set to True when running behind nginx/Cloudflare to trust X-Forwarded-For
    TRUST_PROXY_HEADERS: bool = False

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Externally reachable base URL (provider callbacks, Twilio signature checks)
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    # Sentry
    SENTRY_DSN: str = ""

    # Provider webhooks, requests per minute per client IP (0 disables)
    RATE_LIMIT_WEBHOOK: int = 300

    # Fernet key for outbound webhook signing secrets
    WEBHOOK_SECRET_ENCRYPTION_KEY: str = ""

    # Twilio
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_VALIDATE_SIGNATURES: bool = False

    # ElevenLabs conversational AI
    ELEVENLABS_WEBHOOK_SECRET: str = ""

    # OpenAI realtime SIP (standard-webhooks secret, "whsec_..." form)
    OPENAI_WEBHOOK_SECRET: str = ""

    # Optional live AI media stream (wss://...)
    MEDIA_STREAM_URL: str = ""

    # Vapi assistant returned for assistant-request messages
    VAPI_ASSISTANT_ID: str = ""

    # Outbound webhooks
    OUTBOUND_WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    OUTBOUND_WEBHOOK_MAX_ATTEMPTS: int = 3
    OUTBOUND_WEBHOOK_BACKOFF_SECONDS: list[int] = [1, 5, 15]

    # Realtime gateway liveness
    REALTIME_SWEEP_INTERVAL_SECONDS: int = 15
    REALTIME_STALE_AFTER_SECONDS: int = 45

    # Mobile push (Expo)
    PUSH_ENABLED: bool = True
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Return list of valid secrets for JWT verification (current + previous)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies everywhere except local development."""
        return self.ENV != "dev"


settings = Settings()
