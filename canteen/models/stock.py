"""
Stock Ledger Models - one monthly ledger per (theater, product, year, month)
"""
from sqlalchemy import Column, String, Integer, Date, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from canteen.core import Base
from .base import UUIDMixin, TimestampMixin


class MonthlyStock(Base, UUIDMixin, TimestampMixin):
    """Monthly stock ledger with roll-up totals"""
    __tablename__ = "monthly_stock"

    theater_id = Column(Uuid(as_uuid=True), ForeignKey("theater.id"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("product.id"), nullable=False, index=True)
    year = Column(Integer, nullable=False)
    month_number = Column(Integer, nullable=False)

    # Roll-up totals
    total_invord_stock = Column(Integer, default=0, nullable=False)
    total_sales = Column(Integer, default=0, nullable=False)
    total_expired_stock = Column(Integer, default=0, nullable=False)
    total_damage_stock = Column(Integer, default=0, nullable=False)
    closing_balance = Column(Integer, default=0, nullable=False)

    stock_details = relationship(
        "StockEntry",
        back_populates="ledger",
        order_by="StockEntry.date",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("theater_id", "product_id", "year", "month_number", name="uq_monthly_stock_period"),
    )

    def __repr__(self):
        return f"<MonthlyStock {self.product_id} {self.year}-{self.month_number:02d}>"


class StockEntry(Base, UUIDMixin):
    """One day's stock movements within a monthly ledger"""
    __tablename__ = "stock_entry"

    monthly_stock_id = Column(Uuid(as_uuid=True), ForeignKey("monthly_stock.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)

    # Quantities (non-negative)
    old_stock = Column(Integer, default=0, nullable=False)
    invord_stock = Column(Integer, default=0, nullable=False)
    direct_stock = Column(Integer, default=0, nullable=False)
    sales = Column(Integer, default=0, nullable=False)
    addon = Column(Integer, default=0, nullable=False)
    stock_adjustment = Column(Integer, default=0, nullable=False)
    cancel_stock = Column(Integer, default=0, nullable=False)
    expired_stock = Column(Integer, default=0, nullable=False)
    damage_stock = Column(Integer, default=0, nullable=False)
    balance = Column(Integer, default=0, nullable=False)  # running on-hand after entry

    unit = Column(String(20), default="Nos", nullable=False)
    type = Column(String(30), default="ADDED")
    expire_date = Column(Date)

    ledger = relationship("MonthlyStock", back_populates="stock_details")

    def expected_balance(self) -> int:
        inflow = (self.invord_stock or 0) + (self.direct_stock or 0) + (self.addon or 0)
        outflow = (
            (self.sales or 0) + (self.expired_stock or 0)
            + (self.damage_stock or 0) + (self.cancel_stock or 0)
        )
        return max(0, inflow - outflow + (self.stock_adjustment or 0))
