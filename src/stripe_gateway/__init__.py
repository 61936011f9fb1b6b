# stripe_gateway package
__version__ = "0.1.0"

from .config import GatewayConfig, load_gateway_config
from .database import (
    User,
    Order,
    OrderStatus,
    PaymentToken,
    init_db,
    close_db,
    get_db,
)
from .errors import StripeGatewayError

from .customers import CustomerReconciler, LocalIdentity
from .tokens import TokenSynchronizer
from .orders import OrderService
