"""
Stock alert classifiers and the notification jobs built on them
"""
import asyncio
import uuid
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from canteen.jobs import StockNotificationJobs
from canteen.models import Product
from canteen.schemas.stock import ProductLedger, StockEmailPayload, StockEntryRecord, TheaterRef
from canteen.services.mail_service import render_html, render_subject, render_text
from canteen.services.stock_alert_service import StockAlertService, sort_entries
from conftest import FakeMailer

TODAY = date(2025, 1, 10)


def _ledger(entries, min_stock=5, name="Popcorn"):
    return ProductLedger(
        product_id=uuid.uuid4(),
        product_name=name,
        min_stock=min_stock,
        entries=[StockEntryRecord(**e) for e in entries],
    )


# ========== Expiring / expired ==========

def test_expiring_window_is_inclusive_of_day_three():
    product = _ledger([
        {"date": date(2025, 1, d), "balance": 5, "expire_date": expire}
        for d, expire in [(1, date(2025, 1, 10)), (2, date(2025, 1, 12)),
                          (3, date(2025, 1, 13)), (4, date(2025, 1, 14))]
    ])

    rows = StockAlertService.expiring(product, TODAY)

    assert [r.expire_date for r in rows] == [date(2025, 1, 10), date(2025, 1, 12), date(2025, 1, 13)]
    assert [r.days_until_expiry for r in rows] == [0, 2, 3]


def test_expiring_ignores_empty_and_undated_entries():
    product = _ledger([
        {"date": date(2025, 1, 1), "balance": 0, "expire_date": date(2025, 1, 11)},
        {"date": date(2025, 1, 2), "balance": 8},
    ])
    assert StockAlertService.expiring(product, TODAY) == []


def test_expired_rows():
    product = _ledger([
        {"date": date(2025, 1, 1), "balance": 4, "expire_date": date(2025, 1, 9)},
        {"date": date(2025, 1, 2), "balance": 0, "expire_date": date(2025, 1, 5)},
        {"date": date(2025, 1, 3), "balance": 6, "expire_date": date(2025, 1, 10)},
    ])

    rows = StockAlertService.expired(product, TODAY)

    assert [(r.balance, r.expire_date) for r in rows] == [(4, date(2025, 1, 9))]


# ========== Low stock ==========

def test_low_stock_predictive_trigger():
    product = _ledger([
        {"date": date(2025, 1, 8), "invord_stock": 500, "sales": 240},
        {"date": date(2025, 1, 9), "invord_stock": 260, "sales": 0},
        {"date": date(2025, 1, 10), "invord_stock": 252, "sales": 240},
    ], min_stock=10)

    assert StockAlertService.current_stock(product.entries[-1]) == 12
    assert StockAlertService.average_daily_sales(product.entries, TODAY) == 240

    row = StockAlertService.low_stock(product, TODAY)

    assert row.warning_type == "Will Reach Threshold Soon"
    assert row.predicted_balance == 7
    assert row.balance == 12
    assert row.low_stock_alert == 10


def test_low_stock_currently_low():
    product = _ledger([{"date": TODAY, "invord_stock": 8, "sales": 5}], min_stock=5)

    row = StockAlertService.low_stock(product, TODAY)

    assert row.warning_type == "Currently Low"
    assert row.balance == 3


def test_low_stock_skips_healthy_and_empty_products():
    healthy = _ledger([{"date": TODAY, "invord_stock": 100, "sales": 10}], min_stock=5)
    sold_out = _ledger([{"date": TODAY, "invord_stock": 10, "sales": 10}], min_stock=5)

    assert StockAlertService.low_stock(healthy, TODAY) is None
    assert StockAlertService.low_stock(sold_out, TODAY) is None
    assert StockAlertService.low_stock(_ledger([]), TODAY) is None


def test_average_ignores_days_outside_window():
    entries = [
        StockEntryRecord(date=TODAY - timedelta(days=8), sales=1000),
        StockEntryRecord(date=TODAY - timedelta(days=1), sales=30),
    ]
    assert StockAlertService.average_daily_sales(entries, TODAY) == 30


# ========== Daily report ==========

def test_daily_status_precedence():
    status = StockAlertService.daily_status
    expired = StockEntryRecord(date=TODAY, expire_date=TODAY - timedelta(days=1))
    expiring = StockEntryRecord(date=TODAY, expire_date=TODAY + timedelta(days=2))
    plain = StockEntryRecord(date=TODAY)

    assert status(expired, 0, 5, TODAY) == "Expired"
    assert status(expiring, 0, 5, TODAY) == "Expiring Soon"
    assert status(plain, 0, 5, TODAY) == "Out of Stock"
    assert status(plain, 5, 5, TODAY) == "Low Stock"
    assert status(plain, 6, 5, TODAY) == "Active"


def test_daily_row_prefers_todays_entry():
    product = _ledger([
        {"date": date(2025, 1, 8), "invord_stock": 50, "sales": 0},
        {"date": TODAY, "invord_stock": 40, "sales": 10, "old_stock": 50},
    ], min_stock=5)

    row = StockAlertService.daily_row(product, TODAY)

    assert row.old_stock == 50
    assert row.balance == 30
    assert row.status == "Active"


def test_daily_row_without_entries_is_out_of_stock():
    row = StockAlertService.daily_row(_ledger([]), TODAY)
    assert row.status == "Out of Stock"
    assert row.balance == 0


def test_sort_entries_orders_by_date():
    entries = [StockEntryRecord(date=date(2025, 1, d)) for d in (5, 1, 3)]
    assert [e.date.day for e in sort_entries(entries)] == [1, 3, 5]


# ========== Rendering ==========

def test_email_rendering_lists_every_row():
    product = _ledger([{"date": TODAY, "balance": 5, "expire_date": TODAY + timedelta(days=1)}], name="Nachos <XL>")
    payload = StockEmailPayload(
        theater=TheaterRef(id=uuid.uuid4(), name="PVR Main"),
        kind="expiring",
        recipients=["manager@pvr.test"],
        rows=StockAlertService.expiring(product, TODAY),
    )

    assert render_subject(payload) == "Stock Expiring Soon - PVR Main"
    assert "Days Left: 1" in render_text(payload)
    assert "Nachos &lt;XL&gt;" in render_html(payload)


# ========== Jobs ==========

class _FixedDayJobs(StockNotificationJobs):
    def __init__(self, *args, today, **kwargs):
        super().__init__(*args, **kwargs)
        self._today = today
        self.zones = []

    def today(self, tz=None):
        self.zones.append(tz)
        return self._today


def test_expiring_job_sends_one_email_per_theater(db, make_theater, add_ledger):
    theater_id = make_theater(name="PVR Main", emails=("a@pvr.test", "b@pvr.test"))
    add_ledger(theater_id, "Popcorn", [
        {"date": date(2025, 1, 3), "balance": 5, "invord_stock": 5, "expire_date": date(2025, 1, 12)},
        {"date": date(2025, 1, 1), "balance": 5, "invord_stock": 5, "expire_date": date(2025, 1, 11)},
    ])
    add_ledger(theater_id, "Cola", [
        {"date": date(2025, 1, 2), "balance": 9, "invord_stock": 9, "expire_date": date(2025, 3, 1)},
    ])
    make_theater(name="No Recipients", emails=())
    mailer = FakeMailer()
    jobs = _FixedDayJobs(db, mailer, today=TODAY)

    stats = asyncio.run(jobs.check_expiring_stock())

    assert stats == {"job": "expiringStockCheck", "theaters": 1, "emails_sent": 1, "rows": 2, "errors": 0}
    payload = mailer.sent[0]
    assert payload.kind == "expiring"
    assert payload.recipients == ["a@pvr.test", "b@pvr.test"]
    assert [row.expire_date for row in payload.rows] == [date(2025, 1, 11), date(2025, 1, 12)]


def test_failed_delivery_for_one_theater_does_not_stop_others(db, make_theater, add_ledger):
    for name in ("Alpha Cinemas", "Beta Cinemas"):
        theater_id = make_theater(name=name)
        add_ledger(theater_id, "Popcorn", [{"date": TODAY, "invord_stock": 3, "balance": 3}], min_stock=5)
    mailer = FakeMailer(fail_for={"Alpha Cinemas"})
    jobs = _FixedDayJobs(db, mailer, today=TODAY)

    stats = asyncio.run(jobs.check_low_stock())

    assert stats["theaters"] == 2
    assert stats["emails_sent"] == 1
    assert [p.theater.name for p in mailer.sent] == ["Beta Cinemas"]


def test_daily_report_covers_products_without_ledger(db, make_theater, add_ledger):
    theater_id = make_theater()
    add_ledger(theater_id, "Popcorn", [{"date": TODAY, "invord_stock": 20, "sales": 5, "balance": 15}])
    with db.session() as session:
        session.add(Product(theater_id=theater_id, name="Samosa"))
    mailer = FakeMailer()
    jobs = _FixedDayJobs(db, mailer, today=TODAY)

    stats = asyncio.run(jobs.send_daily_stock_report())

    assert stats["emails_sent"] == 1
    rows = {row.product_name: row for row in mailer.sent[0].rows}
    assert rows["Popcorn"].status == "Active"
    assert rows["Popcorn"].balance == 15
    assert rows["Samosa"].status == "Out of Stock"


def test_registry_names():
    jobs = StockNotificationJobs(db=None, mailer=FakeMailer())
    assert set(jobs.registry()) == {
        "expiringStockCheck", "expiredStockCheck", "lowStockCheck", "dailyStockReport", "stockReport",
    }


def test_job_classifies_in_its_schedule_timezone(db, make_theater, add_ledger):
    theater_id = make_theater()
    add_ledger(theater_id, "Popcorn", [{"date": TODAY, "invord_stock": 3, "balance": 3}], min_stock=5)
    jobs = _FixedDayJobs(db, FakeMailer(), today=TODAY)

    asyncio.run(jobs.check_low_stock(tz="America/New_York"))
    asyncio.run(jobs.check_low_stock())

    assert jobs.zones == ["America/New_York", None]


def test_today_uses_the_given_zone():
    jobs = StockNotificationJobs(db=None, mailer=FakeMailer(), timezone="Asia/Kolkata")

    # UTC+14 and UTC-11 are never on the same calendar day
    ahead = jobs.today("Pacific/Kiritimati")
    behind = jobs.today("Pacific/Pago_Pago")

    assert ahead - behind in (timedelta(days=1), timedelta(days=2))
    assert jobs.today() == datetime.now(ZoneInfo("Asia/Kolkata")).date()
