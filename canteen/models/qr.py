"""
QR Artifact Model - generated QR image plus its metadata row
"""
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Uuid, func
from canteen.core import Base
from .base import UUIDMixin


class QRArtifact(Base, UUIDMixin):
    """
    A stored QR image. The row is inserted only after the image bytes landed
    in storage and is deleted before them.
    """
    __tablename__ = "qr_artifact"

    theater_id = Column(Uuid(as_uuid=True), ForeignKey("theater.id"), nullable=False, index=True)
    kind = Column(String(10), nullable=False)  # single, screen
    qr_name = Column(String(200), nullable=False)
    seat_class = Column(String(100), nullable=False)
    seat = Column(String(20))  # required iff kind == screen
    orientation = Column(String(10), default="landscape", nullable=False)

    data_payload = Column(Text, nullable=False)  # menu URL encoded in the QR
    image_location = Column(String(1000), nullable=False)
    logo_location = Column(Text)
    batch_id = Column(String(64), index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_by = Column(String(100))

    def __repr__(self):
        return f"<QRArtifact {self.kind}:{self.qr_name}:{self.seat or '-'}>"
