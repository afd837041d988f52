from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENV: str = "dev"                # "dev" / "staging" / "prod"
    SERVICE_NAME: str = "stockledger"
    ENABLE_METRICS: bool = True     # mounts /metrics
    TRUST_GATEWAY_HEADERS: bool = True  # identity headers set by the upstream gateway

    class Config:
        env_file = ".env"
        extra="ignore"

admin_config = Settings()
