"""
Checkout Service — エラー分類

各エラーは安定した code / message / HTTP ステータスを持つ。
UI はこの code で「構成を選び直す」「数量を減らす」「後で再試行」を
区別できる。
"""


class CheckoutError(Exception):
    code = "checkout_error"
    message = "Unable to process checkout"
    status_code = 500

    def __init__(self, detail: str | None = None) -> None:
        # detail はログ用。利用者に返すのは常に message
        self.detail = detail
        super().__init__(detail or self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


# ── 解決・価格計算 ───────────────────────────────


class ProductNotFound(CheckoutError):
    code = "product_not_found"
    message = "One or more items are unavailable"
    status_code = 400


class InvalidVariantSelection(CheckoutError):
    code = "invalid_variant_selection"
    message = "Selected configuration is not available. Please pick a different configuration"
    status_code = 400


class OutOfStock(CheckoutError):
    code = "out_of_stock"
    message = "This configuration is currently out of stock"
    status_code = 409


class InsufficientStock(CheckoutError):
    code = "insufficient_stock"
    message = "Requested quantity exceeds available stock. Please reduce the quantity"
    status_code = 409


class EmptyCartTotal(CheckoutError):
    code = "empty_cart_total"
    message = "Cart total must be greater than zero"
    status_code = 400


# ── 永続化・決済ゲートウェイ ─────────────────────


class PersistenceFailure(CheckoutError):
    code = "persistence_failure"
    message = "Unable to save your order. Please try again later"
    status_code = 503


class GatewayError(CheckoutError):
    code = "gateway_error"
    message = "Payment gateway is unavailable. Please try again later"
    status_code = 502


# ── 決済検証 ─────────────────────────────────────


class OrderNotFound(CheckoutError):
    code = "order_not_found"
    message = "Order not found"
    status_code = 404


class OrderNotOnlinePayment(CheckoutError):
    code = "order_not_online_payment"
    message = "Order is not configured for online payment"
    status_code = 400


class GatewayOrderMismatch(CheckoutError):
    code = "gateway_order_mismatch"
    message = "Gateway order mismatch"
    status_code = 400


class SignatureInvalid(CheckoutError):
    code = "signature_invalid"
    message = "Signature verification failed"
    status_code = 400
