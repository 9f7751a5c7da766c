"""Reconciliation job: conversations and pointers rebuilt from history."""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from app.models.conversation import Conversation
from app.models.message import Message
from app.services.chat_service import ChatService
from app.services.conversation_service import ConversationService
from app.services.presence import PresenceRegistry
from app.services.reconciliation import ReconciliationJob


@pytest.fixture
def history(db, make_user, befriend):
    """Three historical messages between friends and no conversation row."""
    ada = make_user("Ada")
    grace = make_user("Grace", "Hopper")
    befriend(ada, grace)
    start = datetime(2026, 3, 1, 9, 0, 0)
    messages = []
    for offset, (sender, receiver, content) in enumerate([
        (ada, grace, "morning"),
        (grace, ada, "hello"),
        (ada, grace, "lunch?"),
    ]):
        message = Message(
            sender_id=sender.id,
            receiver_id=receiver.id,
            content=content,
            created_at=start + timedelta(minutes=offset),
        )
        db.add(message)
        messages.append(message)
    db.commit()
    return ada, grace, messages


def test_creates_missing_conversation_from_history(db, history):
    ada, grace, messages = history

    report = ReconciliationJob(db).run_for_user(ada.id)

    assert report.created == 1
    assert report.failed == 0
    conversations = db.exec(select(Conversation)).all()
    assert len(conversations) == 1
    assert conversations[0].last_message_id == messages[-1].id
    assert conversations[0].last_message_at == messages[-1].created_at


def test_rerun_is_a_no_op(db, history):
    ada, grace, _ = history
    job = ReconciliationJob(db)
    job.run_for_user(ada.id)

    again = job.run_for_user(ada.id)
    from_other_side = job.run_for_user(grace.id)

    assert not again.changed
    assert not from_other_side.changed
    assert len(db.exec(select(Conversation)).all()) == 1


def test_backfills_empty_pointer(db, history):
    ada, grace, messages = history
    conversation = ConversationService(db).find_or_create([ada.id, grace.id])
    assert conversation.last_message_id is None

    report = ReconciliationJob(db).run_for_user(grace.id)

    assert report.backfilled == 1
    assert report.created == 0
    db.refresh(conversation)
    assert conversation.last_message_id == messages[-1].id


def test_non_friends_are_not_reconciled(db, make_user):
    ada = make_user("Ada")
    stranger = make_user("Linus", "Torvalds")
    db.add(Message(sender_id=stranger.id, receiver_id=ada.id, content="spam"))
    db.commit()

    report = ReconciliationJob(db).run_for_user(ada.id)
    assert report.created == 0
    assert db.exec(select(Conversation)).all() == []


def test_friends_without_messages_get_nothing(db, make_user, befriend):
    ada = make_user("Ada")
    grace = make_user("Grace", "Hopper")
    befriend(ada, grace)

    assert ReconciliationJob(db).run_for_user(ada.id).created == 0
    assert db.exec(select(Conversation)).all() == []


def test_run_all_sweeps_active_users(db, history, make_user):
    make_user("Idle", "User", is_active=False)
    reports = ReconciliationJob(db).run_all()

    assert len(reports) == 2
    assert sum(r.created for r in reports) == 1


def test_listing_reconciles_before_reading(db, history, open_session):
    ada, grace, messages = history

    async def noone(user_id):
        return set()

    chat = ChatService(open_session, PresenceRegistry(noone), reconcile_on_list=True)
    listing = asyncio.run(chat.list_conversations(grace.id))

    assert len(listing.conversations) == 1
    assert listing.conversations[0].participant.id == ada.id
    assert listing.conversations[0].last_message.id == messages[-1].id

    skipping = ChatService(open_session, PresenceRegistry(noone), reconcile_on_list=False)
    assert asyncio.run(skipping.list_conversations(grace.id)).pagination.total == 1
