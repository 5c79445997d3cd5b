"""
共通 — 設定の読み込み

環境変数から各サービスの設定を読み込む。
テーブル名・イベントバス名などの必須項目にデフォルト値は無い。
欠けていればリクエスト時ではなく起動時に ConfigurationError になる。
"""

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError

REDIS_URL_DEFAULT = "redis://localhost:6379"


class _EnvSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    database_url: str = Field(alias="DATABASE_URL", min_length=1)
    redis_url: str = Field(REDIS_URL_DEFAULT, alias="REDIS_URL")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None):
        """
        環境変数から設定を組み立てる。

        足りない項目はまとめて ConfigurationError のメッセージに列挙する。
        """
        environ = os.environ if environ is None else environ
        try:
            return cls.model_validate(dict(environ))
        except PydanticValidationError as e:
            names = sorted(
                {str(err["loc"][0]) for err in e.errors() if err.get("loc")}
            )
            raise ConfigurationError(
                f"Missing or invalid configuration: {', '.join(names)}"
            ) from e


class ProductSettings(_EnvSettings):
    product_table: str = Field(alias="PRODUCT_TABLE_NAME", min_length=1)


class BasketSettings(_EnvSettings):
    basket_table: str = Field(alias="BASKET_TABLE_NAME", min_length=1)
    event_bus_name: str = Field(alias="EVENT_BUSNAME", min_length=1)
    event_source: str = Field(alias="EVENT_SOURCE", min_length=1)
    event_detail_type: str = Field(alias="EVENT_DETAILTYPE", min_length=1)


class OrderSettings(_EnvSettings):
    order_table: str = Field(alias="ORDER_TABLE_NAME", min_length=1)
    event_bus_name: str = Field(alias="EVENT_BUSNAME", min_length=1)

    # キューコンシューマ (Redis Streams のコンシューマグループ)
    consumer_enabled: bool = Field(True, alias="ORDER_CONSUMER_ENABLED")
    consumer_group: str = Field("ordering", alias="ORDER_CONSUMER_GROUP")
    consumer_name: str = Field("order-service", alias="ORDER_CONSUMER_NAME")
    batch_size: int = Field(10, alias="ORDER_BATCH_SIZE", gt=0)
    visibility_timeout_ms: int = Field(30000, alias="ORDER_VISIBILITY_TIMEOUT_MS", gt=0)
    max_receive_count: int = Field(5, alias="ORDER_MAX_RECEIVE_COUNT", gt=0)

    @property
    def dead_letter_stream(self) -> str:
        return f"{self.event_bus_name}-dlq"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
