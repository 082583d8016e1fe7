# Pydantic Schemas Package
from .settings import (
    JobSchedule, MailSettings, SmsSettings, ScheduleSettings,
    BrandingSettings, StorageSettings, SECTION_MODELS,
)
from .stock import (
    StockEntryRecord, ProductLedger, TheaterRef,
    ExpiringStockRow, ExpiredStockRow, LowStockRow, DailyReportRow, StockEmailPayload,
)
from .qr import QRSingleCreate, QRScreenCreate, QRArtifactResponse, ScreenBatchResponse
from .pos import PosEvent, BroadcastTestRequest

__all__ = [
    "JobSchedule", "MailSettings", "SmsSettings", "ScheduleSettings",
    "BrandingSettings", "StorageSettings", "SECTION_MODELS",
    "StockEntryRecord", "ProductLedger", "TheaterRef",
    "ExpiringStockRow", "ExpiredStockRow", "LowStockRow", "DailyReportRow", "StockEmailPayload",
    "QRSingleCreate", "QRScreenCreate", "QRArtifactResponse", "ScreenBatchResponse",
    "PosEvent", "BroadcastTestRequest",
]
