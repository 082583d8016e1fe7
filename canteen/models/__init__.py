from .base import TimestampMixin, UUIDMixin
from .theater import Theater, Product, EmailNotification
from .stock import MonthlyStock, StockEntry
from .qr import QRArtifact
from .order import PosOrder, PosOrderItem
from .settings import SystemSetting

__all__ = [
    # Base
    "TimestampMixin", "UUIDMixin",
    # Master
    "Theater", "Product", "EmailNotification",
    # Stock
    "MonthlyStock", "StockEntry",
    # QR
    "QRArtifact",
    # Order
    "PosOrder", "PosOrderItem",
    # Settings
    "SystemSetting",
]
