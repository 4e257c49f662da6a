# Accounts module
from app.modules.accounts.models import Account, AccountType, AccountStatusEnum

__all__ = ["Account", "AccountType", "AccountStatusEnum"]
