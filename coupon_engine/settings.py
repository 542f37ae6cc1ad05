import logging
from functools import lru_cache

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


TATUM_KEY_PLACEHOLDER = "YOUR_TATUM_API_KEY_HERE"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    port: int = 4000
    env: str = "development"
    pool_address: str = "8hGDXBJqpCZvWaDcbvXykRSb1bKbbJ5Ji4c85ubYvkaA"
    solana_rpc_url: str = "https://solana-mainnet.gateway.tatum.io/"
    tatum_api_key: str = ""
    cors_origins: str = "https://zknon.com,https://app.zknon.com"
    # JSON byte array or base58 string; withdrawals are disabled when empty
    engine_secret_key: str = ""
    data_dir: str = "data"
    rpc_timeout: float = 10.0
    confirm_poll_interval: float = 0.5
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env")

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def has_tatum_key(self) -> bool:
        return bool(self.tatum_api_key) and self.tatum_api_key != TATUM_KEY_PLACEHOLDER

    @property
    def rpc_headers(self) -> dict[str, str] | None:
        if self.has_tatum_key:
            return {"x-api-key": self.tatum_api_key}
        return None


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
