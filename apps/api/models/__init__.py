"""Models package."""

from .user import User
from .transaction import Transaction
