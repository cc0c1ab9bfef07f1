from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from models import PointsLog
from services import procedures
from services.errors import PersistenceError, friendly_error
from services.realtime import PROFILES, ChangeNotifier, change_notifier

logger = logging.getLogger(__name__)


class PointsLedger:
    """
    Append-only record of task awards plus the atomic balance increment.

    ``record`` only stages the row on the caller's session so it can commit
    together with the task status change. ``increment_balance`` runs the
    server-side increment in its own transaction.
    """

    def __init__(self, db: Session, notifier: ChangeNotifier = change_notifier):
        self.db = db
        self.notifier = notifier

    def record(self, user_id: int, task_id: int | None, tokens_awarded: int, reason: str) -> PointsLog:
        logger.info(f"record points user={user_id} task={task_id} tokens={tokens_awarded}")
        entry = PointsLog(
            user_id=user_id,
            task_id=task_id,
            tokens_awarded=tokens_awarded,
            reason=reason,
        )
        self.db.add(entry)
        return entry

    def increment_balance(self, user_id: int, amount: int) -> int:
        """
        Add ``amount`` to the profile balance and commit.

        Never retry this blindly after a timeout: check whether the task is
        already Completed and its ledger row exists first.
        """
        logger.info(f"increment_balance user={user_id} amount={amount}")
        try:
            new_total = procedures.increment_tokens(self.db, user_id, amount)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"increment_balance failed: {e}")
            raise PersistenceError(friendly_error(str(e)))

        self.notifier.publish(PROFILES)
        return new_total

    def history(self, user_id: int, limit: int = 50) -> list[PointsLog]:
        return (
            self.db.query(PointsLog)
            .filter(PointsLog.user_id == user_id)
            .order_by(PointsLog.created_at.desc(), PointsLog.id.desc())
            .limit(limit)
            .all()
        )
