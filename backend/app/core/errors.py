"""購読エンジンのドメイン例外"""


class SubscriptionError(Exception):
    """購読エンジン例外の基底クラス"""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(SubscriptionError):
    """入力・状態遷移の検証エラー (リトライ不可)"""

    status_code = 400


class OwnershipError(ValidationError):
    """購読の所有者が一致しない"""

    status_code = 403


class NotFoundError(SubscriptionError):
    """購読・決済が存在しない"""

    status_code = 404


class GatewayError(SubscriptionError):
    """決済ゲートウェイ呼び出しの失敗"""

    status_code = 502


class GatewayInconsistency(SubscriptionError):
    """Webhookの内容がローカル状態と整合しない (ログのみ、状態は変更しない)"""


class ConcurrentMutationConflict(SubscriptionError):
    """楽観ロック競合がリトライ上限を超えた"""

    status_code = 409


class InvariantViolation(SubscriptionError):
    """metadata に複数の保留中操作が同時に存在する"""

    status_code = 409
