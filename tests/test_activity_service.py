import logging
from datetime import timedelta

import pytest

from models import ActivityLog, ActivityType
from services.activity_service import (
    ACTIVITY_STYLES,
    MESSAGE_BUILDERS,
    _assert_exhaustive,
    activity_style,
    delete_activity,
    fetch_activities,
    log_activity,
    post_custom_message,
    render_message,
    unread_count,
)
from services.errors import InvalidInputError, NotPermittedError
from services.realtime import ACTIVITY, ChangeNotifier
from utils import utc_now


def test_every_activity_type_has_a_message_and_style():
    for action in ActivityType:
        assert isinstance(render_message(action, "Ann", "Bob", "Task", "detail"), str)
        icon, color = activity_style(action.value)
        assert icon and color


def test_missing_table_entry_fails_loudly():
    partial = dict(ACTIVITY_STYLES)
    partial.pop(ActivityType.TOKENS_GIVEN)

    with pytest.raises(RuntimeError, match="tokens_given"):
        _assert_exhaustive(partial, "ACTIVITY_STYLES")
    _assert_exhaustive(MESSAGE_BUILDERS, "MESSAGE_BUILDERS")


def test_messages_read_naturally():
    assert render_message(ActivityType.TASK_CREATED, "Ann", "Bob", "Fix bug") == 'Ann created task "Fix bug" for Bob'
    assert render_message(ActivityType.TOKENS_GIVEN, "Ann", "Bob", detail="5 tokens") == "Ann gave 5 tokens to Bob"


def test_log_activity_publishes_change(db, admin):
    notifier = ChangeNotifier()
    seen = []
    notifier.subscribe(ACTIVITY, lambda: seen.append("changed"))

    entry = log_activity(db, admin.id, ActivityType.CUSTOM_MESSAGE, "Hello", notifier=notifier)

    assert entry.id is not None
    assert seen == ["changed"]


def test_log_activity_failure_is_logged_not_raised(db, admin, caplog):
    notifier = ChangeNotifier()
    seen = []
    notifier.subscribe(ACTIVITY, lambda: seen.append("changed"))

    with caplog.at_level(logging.ERROR):
        entry = log_activity(db, admin.id, "not_an_action", "Hello", notifier=notifier)

    assert entry is None
    assert seen == []
    assert "Activity write failed" in caplog.text
    assert db.query(ActivityLog).count() == 0


def test_custom_message_validation(db, user_a):
    with pytest.raises(InvalidInputError):
        post_custom_message(db, user_a, "   ", notifier=ChangeNotifier())
    with pytest.raises(InvalidInputError):
        post_custom_message(db, user_a, "x" * 1001, notifier=ChangeNotifier())

    entry = post_custom_message(db, user_a, "  Lunch at noon  ", notifier=ChangeNotifier())
    assert entry.message == "Lunch at noon"
    assert entry.action_type == ActivityType.CUSTOM_MESSAGE.value


def test_only_staff_or_author_can_delete(db, admin, user_a, user_b):
    entry = post_custom_message(db, user_a, "Mine", notifier=ChangeNotifier())

    with pytest.raises(NotPermittedError):
        delete_activity(db, entry.id, user_b, notifier=ChangeNotifier())

    assert delete_activity(db, entry.id, user_a, notifier=ChangeNotifier())
    other = post_custom_message(db, user_b, "Theirs", notifier=ChangeNotifier())
    assert delete_activity(db, other.id, admin, notifier=ChangeNotifier())
    assert db.query(ActivityLog).count() == 0


def test_feed_is_newest_first_and_filters_unread(db, admin):
    old = log_activity(db, admin.id, ActivityType.CUSTOM_MESSAGE, "old", notifier=ChangeNotifier())
    old.created_at = utc_now() - timedelta(days=2)
    db.commit()
    new = log_activity(db, admin.id, ActivityType.CUSTOM_MESSAGE, "new", notifier=ChangeNotifier())

    assert [e.id for e in fetch_activities(db)] == [new.id, old.id]

    since = utc_now() - timedelta(days=1)
    assert [e.id for e in fetch_activities(db, unread_since=since)] == [new.id]
    assert unread_count(db, since) == 1
    assert unread_count(db, None) == 2
