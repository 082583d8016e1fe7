# Jobs Package - Scheduled stock notification tasks
from .scheduler import CronSupervisor
from .stock_alerts import StockNotificationJobs

__all__ = ["CronSupervisor", "StockNotificationJobs"]
