# marketplace/domain/statuses.py
# Status constants stored as plain strings in the database.


class CartState:
    ACTIVE = "active"
    BUY_NOW = "buy-now"
    PENDING = "pending"
    CONSUMED = "consumed"
    CANCELLED = "cancelled"


class DiscountType:
    AMOUNT = "amount"
    PERCENTAGE = "percentage"

    ALL = (AMOUNT, PERCENTAGE)


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PARTIALLY_CANCELLED = "partially_cancelled"
    RETURNED = "returned"
    PARTIALLY_RETURNED = "partially_returned"

    ALL = (
        PENDING,
        CONFIRMED,
        PROCESSING,
        SHIPPED,
        DELIVERED,
        CANCELLED,
        PARTIALLY_CANCELLED,
        RETURNED,
        PARTIALLY_RETURNED,
    )
    CANCELLABLE = (PENDING, CONFIRMED, PROCESSING, PARTIALLY_CANCELLED)


class OrderItemStatus:
    ACTIVE = "active"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentType:
    CARD = "card"
    NETBANKING = "netbanking"
    WALLET = "wallet"
    UPI = "upi"
    EMI = "emi"
    COD = "cod"

    ALL = (CARD, NETBANKING, WALLET, UPI, EMI, COD)


class PaymentStatus:
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"

    # captured wins over failed, never the other way round
    CAPTURABLE = (PENDING, AUTHORIZED, FAILED)
    AUTHORIZABLE = (PENDING, FAILED)
    FAILABLE = (PENDING, AUTHORIZED)
    REFUNDABLE = (CAPTURED, PARTIALLY_REFUNDED)


class RefundStatus:
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class DeliveryStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETURNED = "returned"
    CANCELLED = "cancelled"

    ALL = (
        PENDING,
        PROCESSING,
        SHIPPED,
        OUT_FOR_DELIVERY,
        DELIVERED,
        FAILED,
        RETURNED,
        CANCELLED,
    )


class PayoutStatus:
    PENDING = "pending"
    COMPLETED = "completed"
