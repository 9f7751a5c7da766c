"""Message store: validation, paging, read-marking and soft delete."""
from datetime import datetime, timedelta

import pytest

from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.message import MAX_CONTENT_LENGTH, Message
from app.services.message_service import MessageService


@pytest.fixture
def pair(make_user):
    return make_user("Ada"), make_user("Grace", "Hopper")


def _insert(db, sender, receiver, content, created_at):
    message = Message(sender_id=sender.id, receiver_id=receiver.id, content=content, created_at=created_at)
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def test_send_trims_and_persists(db, pair):
    ada, grace = pair
    message = MessageService(db).send(ada.id, grace.id, "  hello  ")

    assert message.id is not None
    assert message.content == "hello"
    assert message.message_type == "text"
    assert message.is_read is False
    assert message.created_at is not None


@pytest.mark.parametrize("content", ["", "   ", "x" * (MAX_CONTENT_LENGTH + 1)])
def test_send_rejects_bad_length(db, pair, content):
    ada, grace = pair
    with pytest.raises(ValidationError):
        MessageService(db).send(ada.id, grace.id, content)
    assert MessageService(db).last_between(ada.id, grace.id) is None


def test_send_accepts_maximum_length(db, pair):
    ada, grace = pair
    message = MessageService(db).send(ada.id, grace.id, "x" * MAX_CONTENT_LENGTH)
    assert len(message.content) == MAX_CONTENT_LENGTH


def test_send_rejects_self_message(db, pair):
    ada, _ = pair
    with pytest.raises(ValidationError):
        MessageService(db).send(ada.id, ada.id, "note to self")


def test_send_checks_type_but_not_attachment(db, pair):
    ada, grace = pair
    service = MessageService(db)
    with pytest.raises(ValidationError):
        service.send(ada.id, grace.id, "hi", message_type="video")

    bare = service.send(ada.id, grace.id, "look", message_type="image")
    assert bare.message_type == "image"
    assert bare.file_url is None

    image = service.send(ada.id, grace.id, "look", message_type="image",
                         file_url="https://cdn.example.com/a.png", file_name="a.png")
    assert image.message_type == "image"
    assert image.file_url == "https://cdn.example.com/a.png"


def test_reply_outside_pair_is_dropped(db, pair, make_user):
    ada, grace = pair
    linus = make_user("Linus", "Torvalds")
    service = MessageService(db)

    foreign = service.send(ada.id, linus.id, "other thread")
    original = service.send(grace.id, ada.id, "question?")

    reply = service.send(ada.id, grace.id, "answer", reply_to_id=original.id)
    stray = service.send(ada.id, grace.id, "wrong thread", reply_to_id=foreign.id)
    missing = service.send(ada.id, grace.id, "ghost", reply_to_id=99999)

    assert reply.reply_to_id == original.id
    assert stray.reply_to_id is None
    assert missing.reply_to_id is None


def test_page_is_oldest_first_with_id_tie_break(db, pair):
    ada, grace = pair
    moment = datetime(2026, 1, 1, 12, 0, 0)
    first = _insert(db, ada, grace, "one", moment)
    second = _insert(db, grace, ada, "two", moment)
    third = _insert(db, ada, grace, "three", moment + timedelta(seconds=1))

    page = MessageService(db).get_conversation_page(grace.id, ada.id)
    assert [m.id for m in page] == [first.id, second.id, third.id]


def test_pages_and_before_cursor(db, pair):
    ada, grace = pair
    start = datetime(2026, 1, 1)
    messages = [
        _insert(db, ada if i % 2 else grace, grace if i % 2 else ada, f"m{i}", start + timedelta(minutes=i))
        for i in range(5)
    ]
    service = MessageService(db)

    newest = service.get_conversation_page(ada.id, grace.id, page=1, page_size=2)
    older = service.get_conversation_page(ada.id, grace.id, page=2, page_size=2)
    oldest = service.get_conversation_page(ada.id, grace.id, page=3, page_size=2)
    assert [m.content for m in newest] == ["m3", "m4"]
    assert [m.content for m in older] == ["m1", "m2"]
    assert [m.content for m in oldest] == ["m0"]

    anchored = service.get_conversation_page(ada.id, grace.id, page_size=2, before_id=messages[3].id)
    assert [m.content for m in anchored] == ["m1", "m2"]


def test_paging_bounds(db, pair):
    ada, grace = pair
    service = MessageService(db)
    with pytest.raises(ValidationError):
        service.get_conversation_page(ada.id, grace.id, page=0)
    with pytest.raises(ValidationError):
        service.get_conversation_page(ada.id, grace.id, page_size=101)


def test_page_excludes_other_pairs(db, pair, make_user):
    ada, grace = pair
    linus = make_user("Linus", "Torvalds")
    service = MessageService(db)
    service.send(ada.id, grace.id, "for grace")
    service.send(ada.id, linus.id, "for linus")

    assert [m.content for m in service.get_conversation_page(ada.id, grace.id)] == ["for grace"]


def test_mark_read_only_flips_one_direction(db, pair):
    ada, grace = pair
    service = MessageService(db)
    service.send(ada.id, grace.id, "one")
    service.send(ada.id, grace.id, "two")
    service.send(grace.id, ada.id, "reply")

    assert service.unread_count_for(grace.id) == 2
    assert service.mark_read(ada.id, grace.id) == 2
    assert service.unread_count_for(grace.id) == 0
    assert service.unread_count_for(ada.id) == 1
    assert service.mark_read(ada.id, grace.id) == 0

    read = [m for m in service.get_conversation_page(ada.id, grace.id) if m.sender_id == ada.id]
    assert all(m.is_read and m.read_at is not None for m in read)


def test_soft_delete_rules(db, pair):
    ada, grace = pair
    service = MessageService(db)
    message = service.send(ada.id, grace.id, "oops")

    with pytest.raises(ForbiddenError):
        service.soft_delete(message.id, grace.id)
    with pytest.raises(NotFoundError):
        service.soft_delete(424242, ada.id)

    deleted = service.soft_delete(message.id, ada.id)
    first_deleted_at = deleted.deleted_at
    assert deleted.is_deleted is True
    assert first_deleted_at is not None

    again = service.soft_delete(message.id, ada.id)
    assert again.deleted_at == first_deleted_at

    # Deleted messages stay in history
    assert [m.id for m in service.get_conversation_page(ada.id, grace.id)] == [message.id]


def test_last_between_picks_newest(db, pair):
    ada, grace = pair
    start = datetime(2026, 1, 1)
    _insert(db, ada, grace, "old", start)
    newest = _insert(db, grace, ada, "new", start + timedelta(hours=1))
    _insert(db, ada, grace, "middle", start + timedelta(minutes=30))

    assert MessageService(db).last_between(ada.id, grace.id).id == newest.id
