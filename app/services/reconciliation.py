"""
Reconciliation Job

Repairs drift between message history and the conversations table:

1. conversations whose last_message pointer is empty get it backfilled
   from the newest message between the two participants;
2. friends who have exchanged messages but have no conversation row get
   one, pointing at their newest historical message.

Pointers are only ever filled when empty, so running the job repeatedly
(or concurrently with live sends) never clobbers newer state. A failure on
one pair is logged and skipped.
"""

from dataclasses import dataclass, field
from typing import List
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app.core.errors import ChatError
from app.services.conversation_service import ConversationService
from app.services.friend_graph import FriendGraph
from app.services.message_service import MessageService
from app.services.user_directory import UserDirectory
from app.utils.logger import get_logger
from app.utils.metrics import metrics_collector

logger = get_logger("reconciliation")


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass for a user"""
    user_id: str
    created: int = 0
    backfilled: int = 0
    failed: int = 0
    failed_peers: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.backfilled)


class ReconciliationJob:
    """Backfills conversations and pointers from message history"""

    def __init__(self, db: Session):
        self.db = db
        self.conversations = ConversationService(db)
        self.messages = MessageService(db)

    def _record_failure(self, report: ReconciliationReport, peer_id: str, error: Exception) -> None:
        self.db.rollback()
        report.failed += 1
        report.failed_peers.append(peer_id)
        metrics_collector.increment_counter("reconciliation_failures_total")
        logger.warning(
            "Reconciliation failed for pair",
            user_id=report.user_id,
            peer_id=peer_id,
            error=str(error)
        )

    def backfill_pointers(self, user_id: str, report: ReconciliationReport) -> None:
        for conversation in self.conversations.missing_pointer_for_user(user_id):
            peer_id = conversation.other_participant(user_id)
            try:
                last = self.messages.last_between(user_id, peer_id)
                if last is None:
                    continue
                if self.conversations.update_last_message(conversation, last, only_if_empty=True):
                    report.backfilled += 1
                    logger.info(
                        "Backfilled last message",
                        conversation_id=str(conversation.id),
                        message_id=last.id
                    )
            except (ChatError, SQLAlchemyError) as e:
                self._record_failure(report, peer_id, e)

    def create_missing(self, user_id: str, report: ReconciliationReport) -> None:
        friends = FriendGraph(self.db).friends_of(user_id)
        existing = self.conversations.partner_ids(user_id)

        for friend_id in sorted(friends - existing):
            try:
                last = self.messages.last_between(user_id, friend_id)
                if last is None:
                    continue
                conversation = self.conversations.find_or_create([user_id, friend_id])
                if self.conversations.update_last_message(conversation, last, only_if_empty=True):
                    report.created += 1
                    logger.info(
                        "Created conversation from message history",
                        conversation_id=str(conversation.id),
                        peer_id=friend_id,
                        message_id=last.id
                    )
            except (ChatError, SQLAlchemyError) as e:
                self._record_failure(report, friend_id, e)

    @metrics_collector.time_operation("reconciliation_seconds")
    def run_for_user(self, user_id: str) -> ReconciliationReport:
        """Reconcile every conversation of one user. Idempotent."""
        report = ReconciliationReport(user_id=user_id)
        self.backfill_pointers(user_id, report)
        self.create_missing(user_id, report)

        metrics_collector.increment_counter("reconciliation_conversations_created_total", report.created)
        metrics_collector.increment_counter("reconciliation_pointers_backfilled_total", report.backfilled)
        if report.changed or report.failed:
            logger.info(
                "Reconciliation finished",
                user_id=user_id,
                created=report.created,
                backfilled=report.backfilled,
                failed=report.failed
            )
        return report

    def run_all(self) -> List[ReconciliationReport]:
        """Sweep every active user, isolating failures per user."""
        reports = []
        for user_id in UserDirectory(self.db).active_user_ids():
            try:
                reports.append(self.run_for_user(user_id))
            except (ChatError, SQLAlchemyError) as e:
                self.db.rollback()
                logger.exception("Reconciliation aborted for user", user_id=user_id, error=str(e))
                reports.append(ReconciliationReport(user_id=user_id, failed=1))
        return reports


def main() -> None:
    """Periodic sweep entry point: ``python -m app.services.reconciliation``."""
    from app.db.config import engine
    from app.db.init import init_db

    logging.basicConfig(level=logging.INFO)
    init_db()
    with Session(engine, expire_on_commit=False) as db:
        reports = ReconciliationJob(db).run_all()

    created = sum(r.created for r in reports)
    backfilled = sum(r.backfilled for r in reports)
    failed = sum(r.failed for r in reports)
    print(f"Reconciled {len(reports)} users: {created} created, {backfilled} backfilled, {failed} failed")


if __name__ == "__main__":
    main()
