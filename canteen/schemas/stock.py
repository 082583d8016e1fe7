"""
Stock Notification Schemas
"""
from pydantic import BaseModel
from typing import Optional, List, Literal, Union
import datetime
from uuid import UUID


class StockEntryRecord(BaseModel):
    """One ledger day, total (every quantity present)"""
    date: datetime.date
    old_stock: int = 0
    invord_stock: int = 0
    direct_stock: int = 0
    sales: int = 0
    addon: int = 0
    stock_adjustment: int = 0
    cancel_stock: int = 0
    expired_stock: int = 0
    damage_stock: int = 0
    balance: int = 0
    unit: str = "Nos"
    expire_date: Optional[datetime.date] = None

    class Config:
        from_attributes = True


class ProductLedger(BaseModel):
    """A product with its current-month entries, sorted by date"""
    product_id: UUID
    product_name: str
    min_stock: int = 5
    entries: List[StockEntryRecord] = []


class TheaterRef(BaseModel):
    id: UUID
    name: str


class StockRowBase(BaseModel):
    product_name: str
    old_stock: int = 0
    invord_stock: int = 0
    sales: int = 0
    damage_stock: int = 0
    expired_stock: int = 0
    balance: int = 0
    expire_date: Optional[datetime.date] = None


class ExpiringStockRow(StockRowBase):
    days_until_expiry: int


class ExpiredStockRow(StockRowBase):
    pass


class LowStockRow(StockRowBase):
    predicted_balance: float
    low_stock_alert: int
    warning_type: Literal["Currently Low", "Will Reach Threshold Soon"]


class DailyReportRow(StockRowBase):
    low_stock_alert: int
    status: Literal["Expired", "Expiring Soon", "Out of Stock", "Low Stock", "Active"]


StockRow = Union[ExpiringStockRow, ExpiredStockRow, LowStockRow, DailyReportRow]


class StockEmailPayload(BaseModel):
    theater: TheaterRef
    kind: Literal["expiring", "expired", "low", "daily"]
    recipients: List[str]
    rows: List[StockRow]
