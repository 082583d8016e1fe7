"""
Theater, Product & notification recipient models
"""
from sqlalchemy import Column, String, Boolean, Integer, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from canteen.core import Base
from .base import UUIDMixin, TimestampMixin


class Theater(Base, UUIDMixin, TimestampMixin):
    """Theater (one tenant)"""
    __tablename__ = "theater"

    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)  # soft delete

    # Contact
    contact_email = Column(String(200))
    contact_phone = Column(String(30))

    # Branding
    logo_url = Column(String(1000))

    # Relationships
    products = relationship("Product", back_populates="theater")
    notification_emails = relationship("EmailNotification", back_populates="theater", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Theater {self.name}>"


class Product(Base, UUIDMixin, TimestampMixin):
    """Canteen product"""
    __tablename__ = "product"

    theater_id = Column(Uuid(as_uuid=True), ForeignKey("theater.id"), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Inventory hints
    min_stock = Column(Integer, default=5, nullable=False)  # Low stock alert threshold
    unit = Column(String(20), default="Nos", nullable=False)

    # Relationships
    theater = relationship("Theater", back_populates="products")


class EmailNotification(Base, UUIDMixin, TimestampMixin):
    """Opt-in address for a theater's stock e-mails"""
    __tablename__ = "email_notification"

    theater_id = Column(Uuid(as_uuid=True), ForeignKey("theater.id"), nullable=False, index=True)
    email = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    theater = relationship("Theater", back_populates="notification_emails")
