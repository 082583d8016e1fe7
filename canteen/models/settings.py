"""
System Settings Model - one JSON document per configuration section
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON
from canteen.core import Base


class SystemSetting(Base):
    __tablename__ = "system_setting"

    section = Column(String(50), primary_key=True)  # mail, sms, schedule, branding, storage
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SystemSetting {self.section}>"
