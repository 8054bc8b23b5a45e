from flint.models.account import NEEDS_RECONNECT, Account
from flint.models.activity import Activity
from flint.models.balance import Balance
from flint.models.base import Base
from flint.models.connection import Connection
from flint.models.credential import SNAPTRADE, TELLER, UserCredential
from flint.models.goal import Goal
from flint.models.order import Order
from flint.models.position import Position
from flint.models.webhook_log import WebhookLog

__all__ = [
    "Base",
    "UserCredential",
    "Connection",
    "Account",
    "Balance",
    "Position",
    "Order",
    "Activity",
    "WebhookLog",
    "Goal",
    "NEEDS_RECONNECT",
    "SNAPTRADE",
    "TELLER",
]
