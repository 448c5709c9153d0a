"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .burned_email import BurnedEmail
from .operation_cost import OperationCost
from .credit_package import CreditPackage
