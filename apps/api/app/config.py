from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # runtime env
    env: str = "dev"

    # backing store (must match the scheduler's broker.url)
    redis_url: str = "redis://localhost:6379/0"

    # sink layout (must match the scheduler's broker.topic_prefix)
    topic_prefix: str = "weather/aviation"

    # hard cap on keys scanned for /v1/airports
    max_scan: int = 500


settings = Settings()
