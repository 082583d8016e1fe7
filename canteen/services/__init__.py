# Services Package
from .storage_service import LocalStorage, StoredBlob
from .image_composer import ImageComposer, ImageSpec, Captions, ComposedImage
from .qr_service import QRCodeService, ScreenBatchResult
from .settings_service import SettingsService, ConfigEvents
from .stock_alert_service import StockAlertService
from .mail_service import SmtpStockMailer, StockMailer
from .pos_event_bus import PosEventBus, Subscription, OrderEventPublisher, build_order_projection

__all__ = [
    "LocalStorage",
    "StoredBlob",
    "ImageComposer",
    "ImageSpec",
    "Captions",
    "ComposedImage",
    "QRCodeService",
    "ScreenBatchResult",
    "SettingsService",
    "ConfigEvents",
    "StockAlertService",
    "SmtpStockMailer",
    "StockMailer",
    "PosEventBus",
    "Subscription",
    "OrderEventPublisher",
    "build_order_projection",
]
