"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Focusbeat"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg

    # --- App sessions ---
    session_secret: str  # HS256 key for the pomodoro_session cookie
    session_cookie_name: str = "pomodoro_session"

    # --- Oura OAuth ---
    # Empty values leave the integration "not configured" rather than failing startup.
    oura_client_id: str = ""
    oura_client_secret: str = ""
    oura_redirect_uri: str = ""

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def missing_oura_settings(self) -> list[str]:
        """Return the names of the Oura environment variables that are unset."""
        missing: list[str] = []
        if not self.oura_client_id:
            missing.append("OURA_CLIENT_ID")
        if not self.oura_client_secret:
            missing.append("OURA_CLIENT_SECRET")
        if not self.oura_redirect_uri:
            missing.append("OURA_REDIRECT_URI")
        return missing

    @property
    def oura_configured(self) -> bool:
        return not self.missing_oura_settings()


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
