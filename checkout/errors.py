"""
Checkout Service — エラー分類 (Error Taxonomy)

コアが送出する例外はすべて CheckoutError を継承し、
機械可読な kind と、API 層が返す HTTP ステータスを持つ。

    ValidationError      400  入力不正・必須項目の欠落
    PermissionDenied     403  管理者トークンがない・一致しない
    NotFoundError        404  商品・配送オプション・カート明細・注文が存在しない
    StateConflictError   409  不正な状態遷移・空カート・同時更新の競合
    PaymentProviderError 502  決済プロバイダの失敗・タイムアウト (リトライ可)
    InternalError        500  ストレージ障害・想定外の例外
"""


class CheckoutError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# ── 400 ──────────────────────────────────────────


class ValidationError(CheckoutError):
    kind = "validation"
    status_code = 400


class InvalidQuantity(ValidationError):
    pass


class InvalidAmountError(ValidationError):
    pass


class InvalidSignature(ValidationError):
    pass


# ── 403 ──────────────────────────────────────────


class PermissionDenied(CheckoutError):
    """管理操作に必要な認証がない"""

    kind = "forbidden"
    status_code = 403


# ── 404 ──────────────────────────────────────────


class NotFoundError(CheckoutError):
    kind = "not_found"
    status_code = 404


class ProductNotFound(NotFoundError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class ItemNotFound(NotFoundError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Item not in cart: {product_id}")
        self.product_id = product_id


class ShippingOptionNotFound(NotFoundError):
    def __init__(self, option_id: str) -> None:
        super().__init__(f"Shipping option not found: {option_id}")
        self.option_id = option_id


class InvalidShippingOption(NotFoundError):
    """チェックアウト時に選択された配送オプションを解決できなかった"""


class CouponNotFound(NotFoundError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Coupon not found: {code}")
        self.code = code


class OrderNotFound(NotFoundError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Order not found: {reference}")
        self.reference = reference


# ── 409 ──────────────────────────────────────────


class StateConflictError(CheckoutError):
    kind = "conflict"
    status_code = 409


class InvalidTransitionError(StateConflictError):
    def __init__(self, field: str, current: str, target: str) -> None:
        super().__init__(f"Cannot change {field} from {current} to {target}")
        self.field = field
        self.current = current
        self.target = target


class EmptyCartError(StateConflictError):
    def __init__(self) -> None:
        super().__init__("Cart is empty")


class ConcurrencyConflict(StateConflictError):
    """読み込み後に別の書き込みが先行した (楽観的ロックの競合)"""


class DuplicateOrderNumber(StateConflictError):
    def __init__(self, order_number: str) -> None:
        super().__init__(f"Order number already exists: {order_number}")
        self.order_number = order_number


# ── 502 / 500 ────────────────────────────────────


class PaymentProviderError(CheckoutError):
    kind = "payment_provider"
    status_code = 502
    public_message = "Payment processing failed, please retry"


class InternalError(CheckoutError):
    kind = "internal"
    status_code = 500
    public_message = "Something went wrong"
