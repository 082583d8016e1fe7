"""
Stock Alert Service - pure classification of monthly ledgers into alert rows

No I/O here: the notification jobs load ledgers, these functions decide what
goes into each e-mail.
"""
from datetime import date, timedelta
from typing import Iterable, List, Optional

from canteen.schemas.stock import (
    DailyReportRow,
    ExpiredStockRow,
    ExpiringStockRow,
    LowStockRow,
    ProductLedger,
    StockEntryRecord,
)

EXPIRY_WINDOW_DAYS = 3
SALES_WINDOW_DAYS = 7
PREDICTION_DIVISOR = 48  # half-hour slots per day


def sort_entries(entries: Iterable[StockEntryRecord]) -> List[StockEntryRecord]:
    return sorted(entries, key=lambda e: e.date)


def _base_fields(product_name: str, entry: StockEntryRecord) -> dict:
    return {
        "product_name": product_name,
        "old_stock": entry.old_stock,
        "invord_stock": entry.invord_stock,
        "sales": entry.sales,
        "damage_stock": entry.damage_stock,
        "expired_stock": entry.expired_stock,
        "balance": entry.balance,
        "expire_date": entry.expire_date,
    }


class StockAlertService:
    """Classifiers for the four stock notification kinds"""

    @staticmethod
    def expiring(product: ProductLedger, today: date) -> List[ExpiringStockRow]:
        """Entries with stock left that expire between today and today + 3 days"""
        window_end = today + timedelta(days=EXPIRY_WINDOW_DAYS)
        rows = []
        for entry in sort_entries(product.entries):
            if entry.expire_date is None or entry.balance <= 0:
                continue
            if today <= entry.expire_date <= window_end:
                rows.append(ExpiringStockRow(
                    **_base_fields(product.product_name, entry),
                    days_until_expiry=(entry.expire_date - today).days,
                ))
        return rows

    @staticmethod
    def expired(product: ProductLedger, today: date) -> List[ExpiredStockRow]:
        rows = []
        for entry in sort_entries(product.entries):
            if entry.expire_date is None or entry.balance <= 0:
                continue
            if entry.expire_date < today:
                rows.append(ExpiredStockRow(**_base_fields(product.product_name, entry)))
        return rows

    @staticmethod
    def current_stock(entry: StockEntryRecord) -> int:
        return max(0, entry.invord_stock - entry.sales - entry.expired_stock - entry.damage_stock)

    @staticmethod
    def average_daily_sales(entries: List[StockEntryRecord], today: date) -> float:
        """Mean sales over the last 7 days, counting only days that sold something"""
        since = today - timedelta(days=SALES_WINDOW_DAYS)
        recent = [e for e in entries if e.date >= since]
        selling_days = [e for e in recent if e.sales > 0]
        if not selling_days:
            return 0.0
        return sum(e.sales for e in recent) / len(selling_days)

    @staticmethod
    def low_stock(product: ProductLedger, today: date) -> Optional[LowStockRow]:
        entries = sort_entries(product.entries)
        if not entries:
            return None

        latest = entries[-1]
        current = StockAlertService.current_stock(latest)
        average = StockAlertService.average_daily_sales(entries, today)
        predicted = current - average / PREDICTION_DIVISOR

        if 0 < current <= product.min_stock:
            warning_type = "Currently Low"
        elif 0 < predicted <= product.min_stock:
            warning_type = "Will Reach Threshold Soon"
        else:
            return None

        fields = _base_fields(product.product_name, latest)
        fields["balance"] = current
        return LowStockRow(
            **fields,
            predicted_balance=round(predicted, 2),
            low_stock_alert=product.min_stock,
            warning_type=warning_type,
        )

    @staticmethod
    def daily_status(entry: Optional[StockEntryRecord], balance: int, min_stock: int, today: date) -> str:
        """Expired > Expiring Soon > Out of Stock > Low Stock > Active"""
        if entry is not None and entry.expire_date is not None:
            days_left = (entry.expire_date - today).days
            if days_left < 0:
                return "Expired"
            if days_left <= EXPIRY_WINDOW_DAYS:
                return "Expiring Soon"
        if balance <= 0:
            return "Out of Stock"
        if balance <= min_stock:
            return "Low Stock"
        return "Active"

    @staticmethod
    def daily_row(product: ProductLedger, today: date) -> DailyReportRow:
        """Today's entry, or the latest one when nothing was booked today"""
        entries = sort_entries(product.entries)
        chosen = next((e for e in reversed(entries) if e.date == today), None)
        if chosen is None and entries:
            chosen = entries[-1]

        balance = StockAlertService.current_stock(chosen) if chosen is not None else 0
        status = StockAlertService.daily_status(chosen, balance, product.min_stock, today)
        if chosen is None:
            return DailyReportRow(
                product_name=product.product_name,
                low_stock_alert=product.min_stock,
                status=status,
            )
        fields = _base_fields(product.product_name, chosen)
        fields["balance"] = balance
        return DailyReportRow(
            **fields,
            low_stock_alert=product.min_stock,
            status=status,
        )
