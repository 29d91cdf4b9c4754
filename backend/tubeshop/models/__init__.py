from .catalog import Product, ProductImage
from .orders import (
    Order,
    OrderItem,
    OrderStatusHistory,
    OrderChangeRequest,
    OrderEmail,
    OrderClaim,
    OrderSequence,
)
from .payments import OrderPayment, PaymentRefund, WebhookEvent
from .deposits import DepositTransferProof
from .auth import User, SessionToken

__all__ = [
    'Product', 'ProductImage',
    'Order', 'OrderItem', 'OrderStatusHistory', 'OrderChangeRequest',
    'OrderEmail', 'OrderClaim', 'OrderSequence',
    'OrderPayment', 'PaymentRefund', 'WebhookEvent',
    'DepositTransferProof',
    'User', 'SessionToken',
]
