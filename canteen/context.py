"""
Server Context - the one place the notification plane's collaborators are built

Handlers, jobs and the standalone scheduler all receive this object instead
of reaching for module-level singletons.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from starlette.concurrency import run_in_threadpool

from canteen.core.config import Settings, get_settings
from canteen.core.database import Base, DatabaseManager
from canteen.jobs import CronSupervisor, StockNotificationJobs
from canteen.services import (
    ConfigEvents,
    ImageComposer,
    LocalStorage,
    OrderEventPublisher,
    PosEventBus,
    QRCodeService,
    SettingsService,
    SmtpStockMailer,
)

logger = logging.getLogger(__name__)


@dataclass
class ServerContext:
    settings: Settings
    database: DatabaseManager
    storage: LocalStorage
    fallback_storage: LocalStorage
    composer: ImageComposer
    config_events: ConfigEvents
    settings_service: SettingsService
    qr_service: QRCodeService
    mailer: object
    notification_jobs: StockNotificationJobs
    supervisor: CronSupervisor
    pos_bus: PosEventBus
    order_publisher: OrderEventPublisher

    async def startup(self, start_supervisor: bool = True):
        """Connect the database, prepare storage, install and start the jobs"""
        if await self.database.connect():
            await run_in_threadpool(Base.metadata.create_all, bind=self.database.engine)
        else:
            logger.warning("Database unavailable at startup; reconnector running")

        if not await self.storage.initialise():
            logger.warning("Primary storage unavailable; QR images go to the local fallback")
        await self.fallback_storage.initialise()

        await self.supervisor.initialise()
        if start_supervisor:
            self.supervisor.start()

    async def shutdown(self):
        await self.pos_bus.shutdown()
        self.supervisor.stop()
        await self.database.disconnect()


def build_context(
    settings: Optional[Settings] = None,
    database: Optional[DatabaseManager] = None,
    mailer=None,
) -> ServerContext:
    settings = settings or get_settings()
    database = database or DatabaseManager(
        settings.DATABASE_URL,
        query_timeout=settings.DB_QUERY_TIMEOUT_SECONDS,
        max_retries=settings.DB_MAX_RETRIES,
        retry_base_delay=settings.DB_RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.DB_RETRY_MAX_DELAY_SECONDS,
        ready_max_wait=settings.DB_READY_MAX_WAIT_SECONDS,
        reconnect_base_delay=settings.DB_RECONNECT_BASE_DELAY_SECONDS,
        reconnect_max_attempts=settings.DB_RECONNECT_MAX_ATTEMPTS,
    )

    storage = LocalStorage(settings.STORAGE_ROOT, base_url=settings.STORAGE_BASE_URL)
    fallback_storage = LocalStorage(settings.LOCAL_UPLOADS_ROOT)
    composer = ImageComposer()
    config_events = ConfigEvents()
    settings_service = SettingsService(database, config_events)

    qr_service = QRCodeService(
        db=database,
        storage=storage,
        fallback_storage=fallback_storage,
        composer=composer,
        settings_service=settings_service,
        frontend_base=settings.FRONTEND_BASE_URL,
    )

    mailer = mailer or SmtpStockMailer(settings_service)
    notification_jobs = StockNotificationJobs(database, mailer, timezone=settings.DEFAULT_TIMEZONE)
    supervisor = CronSupervisor(settings_service, notification_jobs.registry(), events=config_events)

    pos_bus = PosEventBus(
        heartbeat_interval=settings.POS_HEARTBEAT_SECONDS,
        write_timeout=settings.POS_WRITE_TIMEOUT_SECONDS,
        queue_size=settings.POS_QUEUE_SIZE,
    )

    return ServerContext(
        settings=settings,
        database=database,
        storage=storage,
        fallback_storage=fallback_storage,
        composer=composer,
        config_events=config_events,
        settings_service=settings_service,
        qr_service=qr_service,
        mailer=mailer,
        notification_jobs=notification_jobs,
        supervisor=supervisor,
        pos_bus=pos_bus,
        order_publisher=OrderEventPublisher(pos_bus),
    )
