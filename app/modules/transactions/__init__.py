# Transaction module
from app.modules.transactions.models import Transaction, TransactionType, TransactionStatus

__all__ = ["Transaction", "TransactionType", "TransactionStatus"]
