"""
Stock Notification Jobs - scheduled e-mail digests of expiring, expired and low stock

Every job walks active theaters that have at least one active notification
address, classifies the current month's ledgers and sends one batched e-mail
per theater. A failing theater or product is logged and skipped; the jobs
themselves never raise.
"""
import logging
import time
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy.orm import selectinload

from canteen.models import EmailNotification, MonthlyStock, Product, Theater
from canteen.schemas.stock import (
    ProductLedger,
    StockEmailPayload,
    StockEntryRecord,
    TheaterRef,
)
from canteen.services.stock_alert_service import StockAlertService

logger = logging.getLogger(__name__)

Classifier = Callable[[ProductLedger, date], Iterable]


def _as_list(result) -> list:
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


class StockNotificationJobs:
    """Job bodies run by the cron supervisor"""

    def __init__(self, db, mailer, timezone: str = "Asia/Kolkata"):
        self.db = db
        self.mailer = mailer
        self.timezone = timezone

    def today(self, tz: Optional[str] = None) -> date:
        """Local date in the firing job's zone, the service zone otherwise"""
        return datetime.now(ZoneInfo(tz or self.timezone)).date()

    # ========== Loading ==========

    async def _load_recipients(self) -> List[tuple]:
        """[(TheaterRef, [emails])] for active theaters with active addresses"""

        def query(session):
            rows = (
                session.query(Theater.id, Theater.name, EmailNotification.email)
                .join(EmailNotification, EmailNotification.theater_id == Theater.id)
                .filter(
                    Theater.is_active.is_(True),
                    Theater.is_deleted.is_(False),
                    EmailNotification.is_active.is_(True),
                )
                .order_by(Theater.name, EmailNotification.email)
                .all()
            )
            grouped: Dict = {}
            for theater_id, name, email in rows:
                entry = grouped.setdefault(theater_id, (TheaterRef(id=theater_id, name=name), []))
                if email and email not in entry[1]:
                    entry[1].append(email)
            return list(grouped.values())

        return await self.db.execute("stock_jobs.load_recipients", query)

    async def _load_ledgers(self, theater_id, today: date) -> List[ProductLedger]:
        """Current-month ledger of every active product, entries sorted by date"""

        def query(session):
            products = (
                session.query(Product)
                .filter(Product.theater_id == theater_id, Product.is_active.is_(True))
                .order_by(Product.name)
                .all()
            )
            ledgers = (
                session.query(MonthlyStock)
                .options(selectinload(MonthlyStock.stock_details))
                .filter(
                    MonthlyStock.theater_id == theater_id,
                    MonthlyStock.year == today.year,
                    MonthlyStock.month_number == today.month,
                )
                .all()
            )
            by_product = {ledger.product_id: ledger for ledger in ledgers}

            result = []
            for product in products:
                ledger = by_product.get(product.id)
                details = list(ledger.stock_details) if ledger else []
                entries = []
                for detail in sorted(details, key=lambda d: d.date):
                    if detail.balance != detail.expected_balance():
                        logger.debug(
                            f"Balance mismatch for {product.name} on {detail.date}: "
                            f"stored {detail.balance}, expected {detail.expected_balance()}"
                        )
                    try:
                        entries.append(StockEntryRecord.model_validate(detail))
                    except ValidationError as e:
                        logger.warning(f"Skipping malformed stock entry of {product.name} on {detail.date}: {e}")
                result.append(ProductLedger(
                    product_id=product.id,
                    product_name=product.name,
                    min_stock=product.min_stock if product.min_stock is not None else 5,
                    entries=entries,
                ))
            return result

        return await self.db.execute("stock_jobs.load_ledgers", query)

    # ========== Shared runner ==========

    async def _run(self, kind: str, job_name: str, classify: Classifier, tz: Optional[str] = None) -> dict:
        start = time.time()
        today = self.today(tz)
        stats = {"job": job_name, "theaters": 0, "emails_sent": 0, "rows": 0, "errors": 0}

        try:
            theaters = await self._load_recipients()
        except Exception as e:
            logger.error(f"[{job_name}] Could not load theaters: {e}")
            stats["errors"] += 1
            return stats

        for theater, recipients in theaters:
            stats["theaters"] += 1
            try:
                ledgers = await self._load_ledgers(theater.id, today)
                rows = []
                for product in ledgers:
                    try:
                        rows.extend(_as_list(classify(product, today)))
                    except Exception as e:
                        logger.error(f"[{job_name}] {theater.name}/{product.product_name} skipped: {e}")
                        stats["errors"] += 1

                if not rows:
                    logger.debug(f"[{job_name}] {theater.name}: nothing to report")
                    continue

                payload = StockEmailPayload(theater=theater, kind=kind, recipients=recipients, rows=rows)
                stats["rows"] += len(rows)
                if await self.mailer.send(payload):
                    stats["emails_sent"] += 1
            except Exception as e:
                logger.error(f"[{job_name}] Theater {theater.name} failed: {e}")
                stats["errors"] += 1

        logger.info(
            f"[{job_name}] Done in {time.time() - start:.2f}s: theaters={stats['theaters']}, "
            f"emails={stats['emails_sent']}, rows={stats['rows']}, errors={stats['errors']}"
        )
        return stats

    # ========== Jobs ==========

    async def check_expiring_stock(self, tz: Optional[str] = None) -> dict:
        return await self._run("expiring", "expiringStockCheck", StockAlertService.expiring, tz)

    async def check_expired_stock(self, tz: Optional[str] = None) -> dict:
        return await self._run("expired", "expiredStockCheck", StockAlertService.expired, tz)

    async def check_low_stock(self, tz: Optional[str] = None) -> dict:
        return await self._run("low", "lowStockCheck", StockAlertService.low_stock, tz)

    async def send_daily_stock_report(self, tz: Optional[str] = None) -> dict:
        return await self._run("daily", "dailyStockReport", StockAlertService.daily_row, tz)

    async def send_stock_report(self, tz: Optional[str] = None) -> dict:
        return await self._run("daily", "stockReport", StockAlertService.daily_row, tz)

    def registry(self) -> Dict[str, Callable]:
        """{job name: coroutine function taking the schedule's tz}"""
        return {
            "expiringStockCheck": self.check_expiring_stock,
            "expiredStockCheck": self.check_expired_stock,
            "lowStockCheck": self.check_low_stock,
            "dailyStockReport": self.send_daily_stock_report,
            "stockReport": self.send_stock_report,
        }
