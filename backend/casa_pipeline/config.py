from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # WordPress backend
    backend_url: str = "http://localhost:8000"
    api_prefix: str = "/wp-json"
    request_timeout: float = 30.0

    # App
    environment: str = "development"
    log_level: str = "INFO"
    allowed_origins: str = "http://localhost:3000,http://localhost"

    # Sessions
    session_cookie_name: str = "casa_session"
    session_ttl_seconds: int = 7 * 86400
    session_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    token_refresh_leeway_seconds: int = 30
    default_organization_slug: str = "default"

    # Authorization
    legacy_super_admin_email: str | None = None
    pipeline_role_matrix: dict[str, list[str]] = {}

    model_config = {"env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _validate_production(self):
        if self.environment == "production":
            if not self.backend_url.startswith("https://"):
                raise ValueError(
                    "Production requires an https BACKEND_URL"
                )
            if self.session_backend == "memory":
                raise ValueError(
                    "Production must not keep sessions in process memory"
                )
            if self.legacy_super_admin_email:
                raise ValueError(
                    "LEGACY_SUPER_ADMIN_EMAIL is not allowed in production"
                )
        return self


settings = Settings()
