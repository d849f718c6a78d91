"""Models package."""

from .user import User
from .account_balance import AccountBalance
from .call_record import CallRecord
from .usage_log import CreditUsageLog
from .purchase import Purchase
from .notification import Notification
