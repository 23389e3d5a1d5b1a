import re
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    Field,
    HttpUrl,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

EXPIRY_PATTERN = re.compile(r"^(\d+)([smhdw])$")


def parse_cors(v: Any) -> list[str] | str:
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    PROJECT_NAME: str = "KiteMate"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"

    FRONTEND_URL: HttpUrl = HttpUrl("http://localhost:5173")
    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS] + [
            str(self.FRONTEND_URL).rstrip("/")
        ]

    # Database
    DATABASE_URL: str = ""
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "kitemate"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # JWT
    JWT_SECRET: str = Field(min_length=32)
    JWT_EXPIRY: str = "7d"
    JWT_ISSUER: str = "kitemate"
    JWT_AUDIENCE: str = "kitemate-api"

    # Zerodha Kite Connect
    ZERODHA_API_KEY: str
    ZERODHA_API_SECRET: str
    ZERODHA_LOGIN_URL: str = "https://kite.zerodha.com/connect/login"
    ZERODHA_API_URL: str = "https://api.kite.trade"

    # LLM (any OpenAI-compatible endpoint)
    LLM_API_KEY: str
    LLM_BASE_URL: str | None = None
    LLM_MODEL: Literal["gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"] = "gpt-4o"

    # Razorpay
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RAZORPAY_API_URL: str = "https://api.razorpay.com/v1"
    PRO_MONTHLY_PRICE_CENTS: int = 29900
    PRO_ANNUAL_PRICE_CENTS: int = 299900
    BILLING_CURRENCY: str = "INR"

    # Subscription tiers
    FREE_TIER_QUERY_LIMIT: int = Field(default=50, ge=0)

    # Feature flags
    ENABLE_CSV_IMPORT: bool = True
    ENABLE_SOCIAL_FEATURES: bool = True

    @field_validator("JWT_EXPIRY")
    @classmethod
    def _check_expiry_format(cls, value: str) -> str:
        if not EXPIRY_PATTERN.match(value):
            raise ValueError(f"Invalid expiry format: {value}")
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_local(self) -> bool:
        return self.ENVIRONMENT == "local"

    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    @property
    def billing_enabled(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        if value and value.startswith("changethis"):
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("JWT_SECRET", self.JWT_SECRET)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        return self


settings = Settings()  # type: ignore
