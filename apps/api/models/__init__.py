"""Models package."""

from .user import User
from .wallet_transaction import WalletTransaction
