"""
共通 — エラー分類

すべてのサービスで使う例外階層。
kind と status_code を持ち、HTTP 層はこれを見て失敗レスポンスを組み立てる。
コア(コマンド・クエリ・オーケストレーター)は HTTP のステータスコードを知らない。
"""


class ServiceError(Exception):
    """サービス共通の基底例外"""

    kind = "ServiceError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """入力が不正（必須項目の欠落・JSON でないボディなど）。副作用の前に必ず返す。"""

    kind = "ValidationError"
    status_code = 400


class BusinessError(ServiceError):
    """業務ルール上、処理を続けられない（空のバスケットでのチェックアウトなど）。"""

    kind = "BusinessError"
    status_code = 422


class BasketNotFound(BusinessError):
    def __init__(self, user_name: str):
        super().__init__(f"Basket not found for user: {user_name}")
        self.user_name = user_name


class EmptyBasket(BusinessError):
    def __init__(self, user_name: str):
        super().__init__(f"Basket has no items for user: {user_name}")
        self.user_name = user_name


class ConditionFailed(ServiceError):
    """条件付き書き込みで、キーが既に存在していた。"""

    kind = "ConditionFailed"
    status_code = 409


class DependencyFailure(ServiceError):
    """
    ストアやイベントバスの呼び出しが失敗した。

    コアはこれを握りつぶさず、内部でリトライもしない。
    リトライはトランスポート側（キューの再配信）の責務。
    """

    kind = "DependencyFailure"
    status_code = 503


class ConfigurationError(ServiceError):
    """起動時の設定エラー（必須の環境変数が無い）。リクエスト単位のエラーではない。"""

    kind = "ConfigurationError"
