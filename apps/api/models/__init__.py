"""Models package."""

from .account import Account
from .buyer_request import BuyerRequest
from .supplier import Supplier
from .plan import Plan
from .match_report import MatchReport
from .managed_service import ManagedService
from .payment_record import PaymentRecord
from .credit_transaction import CreditTransaction
