import logging
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    服务配置，从环境变量或 .env 文件读取

    变量名不区分大小写，例如 PINATA_API_KEY / OPENAI_API_KEY
    """

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Pinata / IPFS
    pinata_api_key: str = ""
    pinata_secret_api_key: str = ""
    pinata_api_url: str = "https://api.pinata.cloud"
    ipfs_gateway: str = "https://gateway.pinata.cloud/ipfs/"
    max_upload_bytes: int = 10 * 1024 * 1024

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    max_chunk_size: int = 10000

    # 代币奖励
    submission_bonus: int = 3
    review_bonus: int = 5
    verification_bonus: int = 10

    # AI 验证阈值：完整内容 / 抽样内容
    single_chunk_threshold: int = 7
    sampled_threshold: int = 6

    min_review_length: int = 10
    require_signature: bool = False
    seed_demo_data: bool = False

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:8097"]
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
