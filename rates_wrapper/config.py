'''Application settings, read from environment variables prefixed with
RATES_WRAPPER_ (and from a .env file, if there is one).
'''
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    # Endpoints are always relative to this, and should never spell it out
    base_url: str = 'https://api.frankfurter.app'
    timeout_seconds: float = 1.0
    # Connect retries only; we don't retry on bad responses
    retries: int = 2
    cache_ttl_seconds: float = 60
    # Rates are cached per (base, quote, date), which clients control
    cache_max_entries: int = 1024

    host: str = 'localhost'
    port: int = 8000
    log_level: str = 'INFO'

    model_config = SettingsConfigDict(
        env_prefix='RATES_WRAPPER_',
        env_file='.env',
        extra='ignore',
    )


settings = Settings()
