"""Models package."""

from .account import Account
from .credit_ledger import CreditLedger
from .generation_job import GenerationJob
from .subscription_plan import SubscriptionPlan
