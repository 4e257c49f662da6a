# Savings lock module
from app.modules.savings.models import SavingsLock, SavingsLockState

__all__ = ["SavingsLock", "SavingsLockState"]
