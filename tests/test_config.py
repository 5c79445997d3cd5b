"""
環境変数からの設定読み込みのテスト
"""

import pytest

from services.shared.config import BasketSettings, OrderSettings, ProductSettings
from services.shared.errors import ConfigurationError


def test_missing_variables_are_listed():
    with pytest.raises(ConfigurationError) as excinfo:
        BasketSettings.from_env({"DATABASE_URL": "sqlite+aiosqlite:///shop.db", "BASKET_TABLE_NAME": "baskets"})

    assert "EVENT_BUSNAME" in excinfo.value.message
    assert "EVENT_DETAILTYPE" in excinfo.value.message
    assert "EVENT_SOURCE" in excinfo.value.message
    assert "BASKET_TABLE_NAME" not in excinfo.value.message


def test_empty_value_counts_as_missing():
    with pytest.raises(ConfigurationError) as excinfo:
        ProductSettings.from_env({"DATABASE_URL": "sqlite+aiosqlite:///shop.db", "PRODUCT_TABLE_NAME": ""})

    assert "PRODUCT_TABLE_NAME" in excinfo.value.message


def test_product_settings_defaults():
    settings = ProductSettings.from_env(
        {"DATABASE_URL": "sqlite+aiosqlite:///shop.db", "PRODUCT_TABLE_NAME": "products", "PATH": "/usr/bin"}
    )

    assert settings.product_table == "products"
    assert settings.redis_url == "redis://localhost:6379"
    assert settings.log_level == "INFO"


def test_order_settings_consumer_options():
    settings = OrderSettings.from_env(
        {
            "DATABASE_URL": "sqlite+aiosqlite:///shop.db",
            "ORDER_TABLE_NAME": "orders",
            "EVENT_BUSNAME": "checkout-events",
            "ORDER_CONSUMER_ENABLED": "false",
            "ORDER_BATCH_SIZE": "25",
        }
    )

    assert settings.consumer_enabled is False
    assert settings.batch_size == 25
    assert settings.max_receive_count == 5
    assert settings.dead_letter_stream == "checkout-events-dlq"


def test_order_settings_rejects_non_positive_batch_size():
    with pytest.raises(ConfigurationError) as excinfo:
        OrderSettings.from_env(
            {
                "DATABASE_URL": "sqlite+aiosqlite:///shop.db",
                "ORDER_TABLE_NAME": "orders",
                "EVENT_BUSNAME": "checkout-events",
                "ORDER_BATCH_SIZE": "0",
            }
        )

    assert "ORDER_BATCH_SIZE" in excinfo.value.message
