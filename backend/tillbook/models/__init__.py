from .tenancy import Tenant, Branch
from .inventory import StockItem, BranchStock, InventoryJournalEntry, MenuStockMap
from .cash import CashRegister, CashSession, CashMovement
from .platform import OutboxRecord, AuditLog
from .policy import CashSessionPolicy, InventoryPolicy
from . import immutability  # noqa: F401  (registers ledger listeners)

__all__ = [
    'Tenant', 'Branch',
    'StockItem', 'BranchStock', 'InventoryJournalEntry', 'MenuStockMap',
    'CashRegister', 'CashSession', 'CashMovement',
    'OutboxRecord', 'AuditLog',
    'CashSessionPolicy', 'InventoryPolicy',
]
