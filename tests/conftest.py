"""
Shared fixtures: in-memory SQLite database, seeded theaters, temp storage
"""
import asyncio
import io
import uuid
from datetime import date

import pytest
from PIL import Image

from canteen.core.database import Base, DatabaseManager
from canteen.models import EmailNotification, MonthlyStock, Product, StockEntry, Theater
from canteen.services import ImageComposer, LocalStorage, QRCodeService, SettingsService


@pytest.fixture
def db():
    manager = DatabaseManager(
        "sqlite://",
        query_timeout=5.0,
        max_retries=3,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        ready_max_wait=1.0,
        retry_ready_wait=1.0,
        ready_check_interval=0.01,
        reconnect_base_delay=0.01,
    )
    Base.metadata.create_all(bind=manager.engine)
    asyncio.run(manager.connect())
    yield manager
    manager.engine.dispose()


@pytest.fixture
def make_theater(db):
    def _make(name="PVR Main", emails=("manager@pvr.test",), logo_url=None, is_active=True):
        with db.session() as session:
            theater = Theater(id=uuid.uuid4(), name=name, logo_url=logo_url, is_active=is_active)
            session.add(theater)
            for email in emails:
                session.add(EmailNotification(theater_id=theater.id, email=email))
            return theater.id

    return _make


@pytest.fixture
def add_ledger(db):
    """Create a product and its monthly ledger; entries are dicts of StockEntry columns"""

    def _add(theater_id, product_name, entries, min_stock=5, period: date = None):
        period = period or entries[0]["date"]
        with db.session() as session:
            product = Product(id=uuid.uuid4(), theater_id=theater_id, name=product_name, min_stock=min_stock)
            session.add(product)
            ledger = MonthlyStock(
                id=uuid.uuid4(),
                theater_id=theater_id,
                product_id=product.id,
                year=period.year,
                month_number=period.month,
            )
            session.add(ledger)
            for values in entries:
                session.add(StockEntry(monthly_stock_id=ledger.id, **values))
            return product.id

    return _add


@pytest.fixture
def storage(tmp_path):
    store = LocalStorage(str(tmp_path / "remote"), base_url="http://cdn.test")
    asyncio.run(store.initialise())
    return store


@pytest.fixture
def fallback_storage(tmp_path):
    store = LocalStorage(str(tmp_path / "uploads"))
    asyncio.run(store.initialise())
    return store


@pytest.fixture
def broken_storage(tmp_path):
    """Root path is a regular file, so initialisation fails"""
    blocker = tmp_path / "not-a-directory"
    blocker.write_bytes(b"")
    store = LocalStorage(str(blocker), base_url="http://broken.test")
    asyncio.run(store.initialise())
    return store


@pytest.fixture
def qr_service(db, storage, fallback_storage):
    return QRCodeService(
        db=db,
        storage=storage,
        fallback_storage=fallback_storage,
        composer=ImageComposer(),
        settings_service=SettingsService(db),
        frontend_base="http://menu.test",
    )


def png_bytes(colour="#FF0000", size=(64, 64)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, colour).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeTransport:
    """Websocket stand-in recording frames and the close call"""

    def __init__(self, hang=False):
        self.frames = []
        self.closed_with = None
        self.hang = hang

    async def send_json(self, frame):
        if self.hang:
            await asyncio.sleep(3600)
        self.frames.append(frame)

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)


class FakeMailer:
    """Records payloads; theaters named in fail_for report a delivery failure"""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, payload):
        if payload.theater.name in self.fail_for:
            return False
        self.sent.append(payload)
        return True
