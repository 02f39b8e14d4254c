import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8080/api/v1")
    HTTP_TIMEOUT_SEC: float = float(os.getenv("HTTP_TIMEOUT_SEC", "30"))

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Workflow snapshot (durable client-side store)
    STATE_STORAGE_KEY: str = os.getenv("STATE_STORAGE_KEY", "onboarding_state")
    STATE_VERSION: str = os.getenv("STATE_VERSION", "1.0")
    STATE_TTL_HOURS: int = int(os.getenv("STATE_TTL_HOURS", "24"))

    # Credentials
    CREDENTIALS_KEY_PREFIX: str = os.getenv("CREDENTIALS_KEY_PREFIX", "auth")
    AUTH_REFRESH_PATH: str = os.getenv("AUTH_REFRESH_PATH", "/auth/refresh")
    LOGIN_PATH: str = os.getenv("LOGIN_PATH", "/login")
    # Comma-separated path prefixes that never require an authenticated session.
    # Forced logout does not redirect away from these.
    PUBLIC_PATH_PREFIXES: str = os.getenv(
        "PUBLIC_PATH_PREFIXES", "/login,/onboarding,/forgot-password,/account-locked"
    )

    # Identity verification
    VERIFICATION_POLL_INTERVAL_SEC: float = float(os.getenv("VERIFICATION_POLL_INTERVAL_SEC", "3.0"))

    # Action coordination
    ACTION_MAX_RETRIES: int = int(os.getenv("ACTION_MAX_RETRIES", "3"))
    ACTION_DEBOUNCE_MS: int = int(os.getenv("ACTION_DEBOUNCE_MS", "0"))

    OTP_RESEND_COOLDOWN_SEC: int = int(os.getenv("OTP_RESEND_COOLDOWN_SEC", "60"))

    # Security & Privacy
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"

    # Dev mock backend
    MOCK_HOST: str = os.getenv("MOCK_HOST", "127.0.0.1")
    MOCK_PORT: int = int(os.getenv("MOCK_PORT", "8080"))
    MOCK_VERIFICATION_TTL_SEC: int = int(os.getenv("MOCK_VERIFICATION_TTL_SEC", "600"))

    @property
    def public_path_prefixes(self) -> tuple:
        return tuple(p.strip() for p in self.PUBLIC_PATH_PREFIXES.split(",") if p.strip())

settings = Settings()
