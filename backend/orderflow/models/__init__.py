from .seller import SellerAccount  # noqa: F401
from .product import Product  # noqa: F401
from .order import Order, OrderItem  # noqa: F401
from .order_event import OrderEvent  # noqa: F401
from .wallet import WalletAccount, WalletTransaction  # noqa: F401
from .revenue_record import RevenueRecord  # noqa: F401
from .payout_transfer import PayoutTransfer  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
from .idempotency_key import IdempotencyKey  # noqa: F401
from .job_run import JobRun  # noqa: F401
from .platform_settings import PlatformSettings  # noqa: F401
