"""
Settings Service - typed, cached access to the system_setting sections

One row per section (mail, sms, schedule, branding, storage) holding a JSON
document. Reads fall back to defaults when the row or the database is
missing; updates are validated, written under a lock and announced on
ConfigEvents as config_changed(section).
"""
import asyncio
import logging
import re
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, SecretStr, ValidationError

from canteen.core.errors import CanteenError, SettingsValidationError
from canteen.models import SystemSetting
from canteen.schemas.settings import (
    SECTION_MODELS,
    BrandingSettings,
    MailSettings,
    ScheduleSettings,
    SmsSettings,
    StorageSettings,
)

logger = logging.getLogger(__name__)

REDACTED = "********"
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


class ConfigEvents:
    """In-process config_changed(section) bus"""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[str], Any]]] = defaultdict(list)

    def subscribe(self, section: str, callback: Callable[[str], Any]) -> Callable[[], None]:
        """Register callback for a section ("*" for all); returns an unsubscribe function"""
        self._listeners[section].append(callback)

        def unsubscribe():
            if callback in self._listeners[section]:
                self._listeners[section].remove(callback)

        return unsubscribe

    def emit(self, section: str):
        logger.info(f"config_changed({section})")
        for callback in list(self._listeners[section]) + list(self._listeners["*"]):
            try:
                callback(section)
            except Exception:
                logger.exception(f"config_changed listener failed for section {section}")


# ========== Schedule convenience forms ==========

def time_to_cron(value: str) -> str:
    """Daily HH:MM -> cron "M H * * *" (no leading zeros)"""
    match = TIME_PATTERN.match(str(value).strip())
    if not match:
        raise SettingsValidationError(f"Invalid time {value!r}, expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise SettingsValidationError(f"Invalid time {value!r}, expected HH:MM")
    return f"{minute} {hour} * * *"


def interval_to_cron(value) -> str:
    """Interval in minutes that divides an hour -> cron "*/N * * * *" """
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        raise SettingsValidationError(f"Invalid interval {value!r}")
    if minutes < 1 or minutes > 60 or 60 % minutes != 0:
        raise SettingsValidationError(
            f"Invalid interval {minutes}: must be between 1 and 60 and divide 60"
        )
    if minutes == 60:
        return "0 * * * *"
    return f"*/{minutes} * * * *"


def validate_cron(cron: str, tz: str):
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise SettingsValidationError(f"Unknown timezone {tz!r}")
    try:
        CronTrigger.from_crontab(cron, timezone=tz)
    except ValueError as e:
        raise SettingsValidationError(f"Invalid cron expression {cron!r}: {e}")


# ========== Helpers ==========

def _reveal(value):
    """Plain JSON-ready copy with secrets unwrapped (storage only)"""
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if isinstance(value, dict):
        return {k: _reveal(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_reveal(v) for v in value]
    return value


def _redact(value):
    if isinstance(value, SecretStr):
        return REDACTED
    if isinstance(value, dict):
        return {k: _redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def _deep_merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _normalise_schedule_patch(patch: dict) -> dict:
    aliases = {name: field.alias for name, field in ScheduleSettings.model_fields.items()}
    normalised = {}
    for key, job in patch.items():
        key = aliases.get(key, key)
        if key not in aliases.values():
            raise SettingsValidationError(f"Unknown scheduled job {key!r}")
        if not isinstance(job, dict):
            raise SettingsValidationError(f"Schedule for {key} must be an object")
        job = dict(job)
        if job.get("time") is not None:
            job["cron"] = time_to_cron(job["time"])
            job["interval"] = None
        elif job.get("interval") is not None:
            job["cron"] = interval_to_cron(job["interval"])
            job["time"] = None
        elif job.get("cron") is not None:
            job["time"] = None
            job["interval"] = None
        normalised[key] = job
    return normalised


class SettingsService:
    """Cached registry over the system_setting table"""

    def __init__(self, db=None, events: Optional[ConfigEvents] = None):
        self.db = db
        self.events = events or ConfigEvents()
        self._cache: Dict[str, BaseModel] = {}
        self._write_lock = asyncio.Lock()

    # ========== Reads ==========

    async def _read_row(self, section: str) -> Optional[dict]:
        def query(session):
            row = session.get(SystemSetting, section)
            return dict(row.value) if row and row.value else None

        return await self.db.execute(f"settings.load_{section}", query)

    async def _load(self, section: str) -> BaseModel:
        model_cls = SECTION_MODELS[section]
        if section in self._cache:
            return self._cache[section]
        if self.db is None:
            return model_cls()

        try:
            value = await self._read_row(section)
        except CanteenError as e:
            logger.warning(f"Settings section {section} unavailable, using defaults: {e}")
            return model_cls()

        try:
            model = model_cls.model_validate(value or {})
        except ValidationError as e:
            logger.error(f"Stored {section} settings are invalid, using defaults: {e}")
            return model_cls()

        self._cache[section] = model
        return model

    async def get(self, section: str) -> BaseModel:
        if section not in SECTION_MODELS:
            raise SettingsValidationError(f"Unknown settings section {section!r}")
        return await self._load(section)

    async def get_mail(self) -> MailSettings:
        return await self._load("mail")

    async def get_sms(self) -> SmsSettings:
        return await self._load("sms")

    async def get_schedule(self) -> ScheduleSettings:
        return await self._load("schedule")

    async def get_branding(self) -> BrandingSettings:
        return await self._load("branding")

    async def get_storage(self) -> StorageSettings:
        return await self._load("storage")

    async def get_redacted(self, section: str) -> dict:
        """Section as a dict with every secret replaced by ********"""
        model = await self.get(section)
        return _redact(model.model_dump(by_alias=True))

    def invalidate(self, section: Optional[str] = None):
        if section is None:
            self._cache.clear()
        else:
            self._cache.pop(section, None)

    # ========== Writes ==========

    def _strip_unchanged_secrets(self, model: BaseModel, patch: dict) -> dict:
        """A redacted placeholder sent back by a client leaves the secret unchanged"""
        cleaned = {}
        for key, value in patch.items():
            if value == REDACTED and isinstance(getattr(model, key, None), SecretStr):
                continue
            cleaned[key] = value
        return cleaned

    async def _write_row(self, section: str, value: dict):
        def upsert(session):
            row = session.get(SystemSetting, section)
            if row is None:
                session.add(SystemSetting(section=section, value=value))
            else:
                row.value = value

        await self.db.execute(f"settings.save_{section}", upsert)

    async def update(self, section: str, patch: dict) -> BaseModel:
        """Validate and persist a partial update, then emit config_changed(section)"""
        if section not in SECTION_MODELS:
            raise SettingsValidationError(f"Unknown settings section {section!r}")
        if not isinstance(patch, dict):
            raise SettingsValidationError("Settings patch must be an object")
        model_cls = SECTION_MODELS[section]

        async with self._write_lock:
            current = await self._load(section)
            if section == "schedule":
                patch = _normalise_schedule_patch(patch)
            else:
                patch = self._strip_unchanged_secrets(current, patch)

            merged = _deep_merge(_reveal(current.model_dump(by_alias=True)), patch)
            try:
                model = model_cls.model_validate(merged)
            except ValidationError as e:
                raise SettingsValidationError(
                    f"Invalid {section} settings",
                    details={"errors": [
                        {"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()
                    ]},
                )

            if section == "schedule":
                for job_name, job in model.by_job_name().items():
                    try:
                        validate_cron(job.cron, job.tz)
                    except SettingsValidationError as e:
                        e.details = {"job": job_name}
                        raise

            if self.db is not None:
                await self._write_row(section, _reveal(model.model_dump(by_alias=True)))
            self._cache[section] = model

        logger.info(f"Settings section {section} updated")
        self.events.emit(section)
        return model
