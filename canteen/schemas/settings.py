"""
Settings Schemas - typed views over the system_setting sections
"""
from pydantic import BaseModel, Field, SecretStr
from typing import Optional


class JobSchedule(BaseModel):
    enabled: bool = True
    cron: str
    tz: str = "Asia/Kolkata"
    time: Optional[str] = None  # "HH:MM" convenience form
    interval: Optional[int] = None  # minutes, must divide 60


class MailSettings(BaseModel):
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    from_name: str = "Theater Canteen"
    from_email: Optional[str] = None
    encryption: str = "tls"  # tls, ssl, none

    @property
    def is_configured(self) -> bool:
        return bool(self.host and (self.from_email or self.username))


class SmsSettings(BaseModel):
    provider: str = "msg91"
    enabled: bool = False
    api_key: Optional[SecretStr] = None
    sender_id: Optional[str] = None
    template_id: Optional[str] = None
    otp_length: int = 6
    otp_expiry: int = 300  # seconds
    max_retries: int = 3


class ScheduleSettings(BaseModel):
    expiring_stock_check: JobSchedule = Field(
        default_factory=lambda: JobSchedule(cron="0 9 * * *"), alias="expiringStockCheck"
    )
    expired_stock_check: JobSchedule = Field(
        default_factory=lambda: JobSchedule(cron="0 8 * * *"), alias="expiredStockCheck"
    )
    low_stock_check: JobSchedule = Field(
        default_factory=lambda: JobSchedule(cron="*/30 * * * *"), alias="lowStockCheck"
    )
    daily_stock_report: JobSchedule = Field(
        default_factory=lambda: JobSchedule(cron="0 22 * * *"), alias="dailyStockReport"
    )
    stock_report: JobSchedule = Field(
        default_factory=lambda: JobSchedule(cron="0 20 * * *"), alias="stockReport"
    )

    class Config:
        populate_by_name = True

    def by_job_name(self) -> dict:
        """{camelCase job name: JobSchedule}"""
        return {
            field.alias: getattr(self, name)
            for name, field in type(self).model_fields.items()
        }


class BrandingSettings(BaseModel):
    application_name: str = "SCAN THIS QR"
    logo_url: Optional[str] = None
    qr_background_url: Optional[str] = None


class StorageSettings(BaseModel):
    provider: str = "local"  # local, gcs
    bucket: Optional[str] = None
    base_url: Optional[str] = None
    credentials: Optional[SecretStr] = None


SECTION_MODELS = {
    "mail": MailSettings,
    "sms": SmsSettings,
    "schedule": ScheduleSettings,
    "branding": BrandingSettings,
    "storage": StorageSettings,
}
