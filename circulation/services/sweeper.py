"""Time-driven transitions nobody asks for directly.

Both sweeps are idempotent and commit page by page, so an interrupted run
leaves only whole transitions behind and the next run picks up the rest.
Each run opens its own session from ``session_factory``.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from circulation.core.clock import utcnow
from circulation.core.config import Settings, get_settings
from circulation.core.database import atomic
from circulation.models.models import Borrowing, BorrowingStatus
from circulation.services.reservations import ReservationEngine

logger = logging.getLogger("circulation.sweeper")


class Sweeper:
    def __init__(self, session_factory, settings: Settings = None, clock=utcnow):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.clock = clock

    def mark_overdue_borrowings(self) -> int:
        """ACTIVE -> OVERDUE for every loan past due. Fines are left to the return."""
        now = self.clock()
        page_size = self.settings.sweep_page_size
        total = 0
        db = self.session_factory()
        try:
            while True:
                with atomic(db):
                    ids = [
                        row.id
                        for row in db.query(Borrowing.id)
                        .filter(Borrowing.status == BorrowingStatus.ACTIVE, Borrowing.due_date < now)
                        .order_by(Borrowing.id)
                        .limit(page_size)
                    ]
                    if not ids:
                        break
                    # deadline checked again: a renewal may have landed since the SELECT
                    marked = (
                        db.query(Borrowing)
                        .filter(Borrowing.id.in_(ids), Borrowing.status == BorrowingStatus.ACTIVE,
                                Borrowing.due_date < now)
                        .update({Borrowing.status: BorrowingStatus.OVERDUE}, synchronize_session=False)
                    )
                total += marked
                if len(ids) < page_size:
                    break
        finally:
            db.close()
        logger.info(f"Marked {total} borrowing(s) as overdue")
        return total

    def expire_overdue_reservations(self) -> int:
        db = self.session_factory()
        try:
            total = ReservationEngine(db, self.settings, self.clock).expire_overdue()
        finally:
            db.close()
        logger.info(f"Expired {total} reservation(s)")
        return total

    def run_all(self) -> dict:
        return {
            "overdue_borrowings": self.mark_overdue_borrowings(),
            "expired_reservations": self.expire_overdue_reservations(),
        }


def build_scheduler(sweeper: Sweeper) -> BackgroundScheduler:
    """Daily overdue marking at midnight UTC, hourly reservation expiry."""
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(sweeper.mark_overdue_borrowings, CronTrigger(hour=0, minute=0),
                      id="mark_overdue_borrowings", max_instances=1, coalesce=True, replace_existing=True)
    scheduler.add_job(sweeper.expire_overdue_reservations, CronTrigger(minute=0),
                      id="expire_overdue_reservations", max_instances=1, coalesce=True, replace_existing=True)
    return scheduler
