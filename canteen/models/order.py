"""
Order Models - the authoritative record POS events are projected from
"""
from sqlalchemy import Column, String, Numeric, Integer, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from canteen.core import Base
from .base import UUIDMixin, TimestampMixin


class PosOrder(Base, UUIDMixin, TimestampMixin):
    """Order Header"""
    __tablename__ = "pos_order"

    theater_id = Column(Uuid(as_uuid=True), ForeignKey("theater.id"), nullable=False, index=True)
    order_number = Column(String(50), nullable=False, index=True)
    source = Column(String(20), default="pos")  # pos, kiosk, qr_code, online
    status = Column(String(20), default="pending", index=True)  # pending, confirmed, completed, cancelled

    customer_name = Column(String(200))

    # Payment
    payment_method = Column(String(30), default="cash")
    payment_status = Column(String(20), default="pending")

    # Amounts
    subtotal = Column(Numeric(12, 2), default=0)
    tax_amount = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)

    items = relationship(
        "PosOrderItem",
        back_populates="order",
        order_by="PosOrderItem.position",
        cascade="all, delete-orphan",
    )


class PosOrderItem(Base, UUIDMixin):
    """Order Line Item"""
    __tablename__ = "pos_order_item"

    order_id = Column(Uuid(as_uuid=True), ForeignKey("pos_order.id"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("product.id"))
    position = Column(Integer, default=0, nullable=False)
    product_name = Column(String(300), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(12, 2), default=0)

    order = relationship("PosOrder", back_populates="items")
