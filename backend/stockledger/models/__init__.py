from .catalog import Warehouse, Location, Product, ProductVariant, User
from .inventory import StockBalance
from .movements import StockMovement, StockMovementLine
from .stock_takes import StockTake, StockTakeLine
from .documents import DocumentSequence, AuditLog

__all__ = [
    'Warehouse', 'Location', 'Product', 'ProductVariant', 'User',
    'StockBalance',
    'StockMovement', 'StockMovementLine',
    'StockTake', 'StockTakeLine',
    'DocumentSequence', 'AuditLog',
]
