from .tenancy import Business, User, SessionToken
from .customers import Customer, LoyaltyCard, LoyaltyStampEvent
from .scheduling import Appointment, Task, NotificationView
from .finance import FinancialTransaction, PixCharge
from .inventory import InventoryItem, StockMovement
from .proposals import Proposal
from .subscriptions import SubscriptionPlan, Subscription
from .ledger import LedgerEvent

__all__ = [
    'Business', 'User', 'SessionToken',
    'Customer', 'LoyaltyCard', 'LoyaltyStampEvent',
    'Appointment', 'Task', 'NotificationView',
    'FinancialTransaction', 'PixCharge',
    'InventoryItem', 'StockMovement',
    'Proposal',
    'SubscriptionPlan', 'Subscription',
    'LedgerEvent',
]
