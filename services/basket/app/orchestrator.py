"""
Checkout Orchestrator — バスケット → チェックアウトイベント

オーケストレーション型:
  オーケストレーターがバスケットの読み込み・イベント発行・バスケット削除を
  順番に実行する。注文の作成そのものは Order Service がイベントを受けて行う。

  状態遷移:
  ┌──────────────────────────────────────────────────────────────┐
  │  RECEIVED                                                    │
  │    → VALIDATED       userName が無ければ ValidationError     │
  │    → BASKET_LOADED   バスケットが無い/空なら BusinessError    │
  │    → PAYLOAD_BUILT   totalPrice を計算しイベントを組み立てる  │
  │    → EVENT_PUBLISHED 失敗したらバスケットは残したまま中断     │
  │    → BASKET_CLEARED  失敗しても警告のみ（注文は作られる）     │
  └──────────────────────────────────────────────────────────────┘

  重要な不変条件:
    バスケットの削除は、イベントの発行が成功した後にしか行わない。
    発行前に失敗した場合は副作用が一切無いので、同じリクエストで再試行できる。
    発行後に削除だけ失敗した場合は、古いバスケットが残るだけで注文は失われない。
"""

import logging
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ...shared.errors import BasketNotFound, DependencyFailure, EmptyBasket, ValidationError
from ...shared.events import CheckoutEvent, EventPublisher
from ...shared.store import KeyValueStore
from . import commands, queries

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    BASKET_LOADED = "BASKET_LOADED"
    PAYLOAD_BUILT = "PAYLOAD_BUILT"
    EVENT_PUBLISHED = "EVENT_PUBLISHED"
    BASKET_CLEARED = "BASKET_CLEARED"


class CheckoutResult(BaseModel):
    success: bool
    state: CheckoutState
    payload: dict
    event_id: str | None = None
    warnings: list[str] = Field(default_factory=list)
    saga_log: list[dict] = Field(default_factory=list)


def calculate_total_price(items: list[dict]) -> float:
    """
    各行の price を合計する。

    quantity は掛けない（既存の挙動をそのまま維持している）。
    """
    total = 0.0
    for item in items:
        price = item.get("price", 0) if isinstance(item, dict) else None
        if isinstance(price, bool) or not isinstance(price, (int, float)):
            raise ValidationError(f"Basket item has an invalid price: {item!r}")
        total += price
    return total


class CheckoutOrchestrator:
    """チェックアウトのオーケストレーター"""

    def __init__(
        self,
        basket_store: KeyValueStore,
        publisher: EventPublisher,
        bus_name: str,
        source: str,
        detail_type: str,
    ):
        self.basket_store = basket_store
        self.publisher = publisher
        self.bus_name = bus_name
        self.source = source
        self.detail_type = detail_type

    async def execute(self, request: dict) -> CheckoutResult:
        """
        チェックアウトを実行する。

        EVENT_PUBLISHED より前の失敗は例外としてそのまま呼び出し元へ送出する。
        その場合バスケットには一切触れていない。
        """
        saga_log: list[dict] = []

        # ── Step 1: リクエストを検証 ────────────────
        self._begin(saga_log, 1, "ValidateRequest")
        if not isinstance(request, dict):
            self._fail(saga_log, "Checkout request must be a JSON object")
            raise ValidationError("Checkout request must be a JSON object")
        user_name = request.get("userName")
        if not isinstance(user_name, str) or not user_name:
            self._fail(saga_log, "userName is required")
            raise ValidationError("userName is required")
        self._complete(saga_log)

        # ── Step 2: バスケットを読み込む ────────────
        self._begin(saga_log, 2, "LoadBasket")
        try:
            basket = await queries.get_basket(self.basket_store, user_name)
        except DependencyFailure as e:
            self._fail(saga_log, str(e))
            raise
        if basket is None:
            self._fail(saga_log, "Basket not found")
            raise BasketNotFound(user_name)
        items = basket.get("items")
        if not items:
            self._fail(saga_log, "Basket is empty")
            raise EmptyBasket(user_name)
        self._complete(saga_log)

        # ── Step 3: イベントの内容を組み立てる ──────
        self._begin(saga_log, 3, "BuildPayload")
        try:
            event = CheckoutEvent.model_validate(
                {
                    **request,
                    "userName": user_name,
                    "totalPrice": calculate_total_price(items),
                    "items": items,
                }
            )
        except PydanticValidationError as e:
            self._fail(saga_log, str(e))
            raise ValidationError(f"Invalid checkout request: {e}") from e
        except ValidationError as e:
            self._fail(saga_log, str(e))
            raise
        payload = event.model_dump()
        self._complete(saga_log)

        # ── Step 4: チェックアウトイベントを発行 ────
        # 失敗したらここで中断する。バスケットは残る。
        self._begin(saga_log, 4, "PublishCheckoutEvent")
        try:
            event_id = await self.publisher.publish(
                self.bus_name, self.source, self.detail_type, payload
            )
        except DependencyFailure as e:
            self._fail(saga_log, str(e))
            logger.error("Checkout for %s aborted, basket kept: %s", user_name, e)
            raise
        self._complete(saga_log)

        # ── Step 5: バスケットを削除 ────────────────
        # ここでの失敗は発行済みのイベントを取り消さない（補償トランザクションは無い）。
        self._begin(saga_log, 5, "DeleteBasket")
        try:
            await commands.delete_basket(self.basket_store, user_name)
        except DependencyFailure as e:
            self._fail(saga_log, str(e))
            logger.warning(
                "Checkout event %s published but basket for %s was not deleted: %s",
                event_id,
                user_name,
                e,
            )
            return CheckoutResult(
                success=True,
                state=CheckoutState.EVENT_PUBLISHED,
                payload=payload,
                event_id=event_id,
                warnings=[f"Order placed but the basket could not be cleared: {e}"],
                saga_log=saga_log,
            )
        self._complete(saga_log)

        logger.info("Checkout completed for %s: event %s", user_name, event_id)
        return CheckoutResult(
            success=True,
            state=CheckoutState.BASKET_CLEARED,
            payload=payload,
            event_id=event_id,
            saga_log=saga_log,
        )

    @staticmethod
    def _begin(saga_log: list[dict], step: int, action: str) -> None:
        saga_log.append(
            {
                "step": step,
                "action": action,
                "status": "EXECUTING",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    @staticmethod
    def _complete(saga_log: list[dict]) -> None:
        saga_log[-1]["status"] = "COMPLETED"

    @staticmethod
    def _fail(saga_log: list[dict], error: str) -> None:
        saga_log[-1]["status"] = "FAILED"
        saga_log[-1]["error"] = error
