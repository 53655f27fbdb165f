"""Test suite for the notification coordinator."""

from datetime import datetime, timedelta, timezone

import pytest

from activity_sync.domain.errors import StoreError, ValidationError
from activity_sync.metrics import REGISTRY
from activity_sync.services.notifications import (
    NOTIFICATION_KINDS,
    NotificationCoordinator,
    NotificationKind,
    truncate_metadata,
)


def _suppressed(type_):
    return REGISTRY.get_sample_value("notifications_suppressed_total", {"type": type_}) or 0.0


@pytest.mark.asyncio
async def test_create_notification_applies_defaults(notifications, clock):
    """Test identity, created_at and read defaults."""
    expected = clock.now
    notification = await notifications.create_notification(
        {"user_id": "u1", "from_user_id": "u2", "type": "like", "message": "liked your meme"}
    )

    assert notification.id
    assert notification.read is False
    assert notification.created_at == expected
    stored = await notifications.get_user_notifications("u1")
    assert [n.id for n in stored] == [notification.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["user_id", "type", "message"])
async def test_create_notification_requires_fields(notifications, store, settings, missing):
    """Test missing required fields fail before any write."""
    data = {"user_id": "u1", "type": "like", "message": "liked your meme"}
    del data[missing]

    with pytest.raises(ValidationError):
        await notifications.create_notification(data)
    assert store.document_count(settings.notifications_collection) == 0


@pytest.mark.asyncio
async def test_metadata_text_is_truncated(notifications):
    """Test long metadata text is cut to 100 characters and short text is kept."""
    notification = await notifications.create_notification(
        {
            "user_id": "u1",
            "type": "comment",
            "message": "commented on your meme",
            "metadata": {"comment_text": "x" * 150, "content_title": "short", "score": 3},
        }
    )

    assert notification.metadata["comment_text"] == "x" * 100
    assert notification.metadata["content_title"] == "short"
    assert notification.metadata["score"] == 3


def test_truncate_metadata_boundary():
    """Test text of exactly the limit is stored unmodified."""
    assert truncate_metadata({"a": "y" * 100, "b": "y" * 101}, 100) == {
        "a": "y" * 100,
        "b": "y" * 100,
    }


@pytest.mark.asyncio
async def test_like_creates_notification_for_author(notifications):
    """Test like notifications address the content author."""
    notification = await notifications.like("fan", "author", "meme-1", "Funny cat")

    assert notification.user_id == "author"
    assert notification.from_user_id == "fan"
    assert notification.type == "like"
    assert notification.target_id == "meme-1"
    assert notification.message == "liked your meme"
    assert notification.metadata == {"content_title": "Funny cat"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event",
    [
        lambda n: n.like("u1", "u1", "meme-1", "Title"),
        lambda n: n.comment("u1", "u1", "meme-1", "Title", "nice"),
        lambda n: n.reply("u1", "u1", "meme-1", "Title", "thanks"),
    ],
)
async def test_self_actions_are_suppressed(notifications, store, settings, event):
    """Test actors are never notified about their own actions."""
    assert await event(notifications) is None
    assert store.document_count(settings.notifications_collection) == 0


@pytest.mark.asyncio
async def test_suppression_is_counted(notifications):
    """Test suppressed events show up in metrics."""
    before = _suppressed("like")
    await notifications.like("u1", "u1", "meme-1", "Title")
    assert _suppressed("like") == before + 1


@pytest.mark.asyncio
async def test_comment_and_reply_truncate_text(notifications):
    """Test comment and reply text is truncated in metadata."""
    comment = await notifications.comment("u2", "u1", "meme-1", "Title", "c" * 300)
    reply = await notifications.reply("u1", "u2", "meme-1", "Title", "r" * 300)

    assert comment.message == "commented on your meme"
    assert comment.metadata["comment_text"] == "c" * 100
    assert reply.message == "replied to your comment"
    assert reply.user_id == "u2"
    assert reply.metadata["comment_text"] == "r" * 100


@pytest.mark.asyncio
async def test_achievement_is_self_addressed(notifications):
    """Test achievements are never suppressed and come from the user."""
    notification = await notifications.achievement("u1", "First Post", "trophy")

    assert notification.user_id == notification.from_user_id == "u1"
    assert notification.message == 'unlocked the "First Post" achievement!'
    assert notification.metadata == {
        "achievement_name": "First Post",
        "achievement_icon": "trophy",
    }


@pytest.mark.asyncio
async def test_event_constructors_swallow_store_failures(notifications, store):
    """Test a failed notification write never reaches the caller."""
    store.fail_on.add("batch")

    assert await notifications.like("u2", "u1", "meme-1", "Title") is None
    assert await notifications.achievement("u1", "Badge", "star") is None


@pytest.mark.asyncio
async def test_event_constructors_skip_invalid_input(notifications, store, settings):
    """Test missing event fields are logged and skipped."""
    assert await notifications.like("u2", "u1", "", "Title") is None
    assert await notifications.like("u2", "", "meme-1", "Title") is None
    assert await notifications.notify("unknown", "u2", "u1") is None
    assert store.document_count(settings.notifications_collection) == 0


@pytest.mark.asyncio
async def test_registered_kind_uses_its_policy(notifications):
    """Test new kinds declare self-suppression without touching shared logic."""
    notifications.register_kind(NotificationKind("follow", "started following you"))
    notifications.register_kind(
        NotificationKind("streak", "kept a {days} day streak", suppress_self=False)
    )

    assert await notifications.notify("follow", "u1", "u1") is None
    follow = await notifications.notify("follow", "u2", "u1")
    streak = await notifications.notify("streak", "u1", "u1", days=7)

    assert follow.message == "started following you"
    assert streak.message == "kept a 7 day streak"


@pytest.mark.asyncio
async def test_registered_kinds_stay_with_their_coordinator(notifications, store, settings):
    """Test a kind registered on one coordinator is unknown to every other."""
    notifications.register_kind(NotificationKind("follow", "started following you"))
    other = NotificationCoordinator(store, settings=settings)

    assert "follow" not in NOTIFICATION_KINDS
    assert await other.notify("follow", "u2", "u1") is None
    assert await notifications.notify("follow", "u2", "u1") is not None
    assert store.document_count(settings.notifications_collection) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event",
    [
        lambda n: n.comment("u2", "u1", "meme-1", "", "nice"),
        lambda n: n.comment("u2", "u1", "", "Title", "nice"),
        lambda n: n.reply("u1", "u2", "meme-1", "", "thanks"),
        lambda n: n.reply("u1", "u2", "", "Title", "thanks"),
    ],
)
async def test_comment_and_reply_need_content_id_and_title(notifications, store, settings, event):
    """Test comment and reply events without content details are skipped."""
    assert await event(notifications) is None
    assert store.document_count(settings.notifications_collection) == 0


@pytest.mark.asyncio
async def test_user_notifications_newest_first_with_limit(notifications):
    """Test ordering and limit of the notification feed."""
    for i in range(4):
        await notifications.like(f"fan{i}", "author", f"meme-{i}", "Title")
    await notifications.like("fan", "other", "meme-x", "Title")

    feed = await notifications.get_user_notifications("author", limit=3)

    assert [n.from_user_id for n in feed] == ["fan3", "fan2", "fan1"]


@pytest.mark.asyncio
async def test_read_state(notifications):
    """Test unread counting and marking read."""
    first = await notifications.like("a", "u1", "m1", "T")
    await notifications.like("b", "u1", "m2", "T")
    await notifications.like("c", "u1", "m3", "T")
    await notifications.like("c", "u2", "m3", "T")
    assert await notifications.get_unread_count("u1") == 3

    await notifications.mark_as_read(first.id)
    assert await notifications.get_unread_count("u1") == 2

    assert await notifications.mark_all_as_read("u1") == 2
    assert await notifications.get_unread_count("u1") == 0
    assert await notifications.get_unread_count("u2") == 1
    assert await notifications.mark_all_as_read("u1") == 0


@pytest.mark.asyncio
async def test_deletion(notifications):
    """Test single and bulk deletion."""
    first = await notifications.like("a", "u1", "m1", "T")
    await notifications.like("b", "u1", "m2", "T")
    await notifications.like("b", "u2", "m2", "T")

    await notifications.delete_notification(first.id)
    assert len(await notifications.get_user_notifications("u1")) == 1

    assert await notifications.delete_all_notifications("u1") == 1
    assert await notifications.get_user_notifications("u1") == []
    assert len(await notifications.get_user_notifications("u2")) == 1


@pytest.mark.asyncio
async def test_write_failures_propagate(notifications, store):
    """Test write paths surface store failures."""
    notification = await notifications.like("a", "u1", "m1", "T")
    store.fail_on.add("batch")

    with pytest.raises(StoreError):
        await notifications.mark_as_read(notification.id)
    with pytest.raises(StoreError):
        await notifications.mark_all_as_read("u1")
    with pytest.raises(StoreError):
        await notifications.delete_all_notifications("u1")
    with pytest.raises(StoreError):
        await notifications.create_notification(
            {"user_id": "u1", "type": "like", "message": "liked your meme"}
        )


@pytest.mark.asyncio
async def test_read_failures_are_masked(notifications, store):
    """Test read paths fall back to safe defaults."""
    await notifications.like("a", "u1", "m1", "T")
    store.fail_on.add("query")

    assert await notifications.get_user_notifications("u1") == []
    assert await notifications.get_unread_count("u1") == 0


@pytest.mark.asyncio
async def test_cleanup_respects_retention_boundary(notifications, clock):
    """Test only notifications strictly older than 30 days are removed."""
    now = clock.now + timedelta(days=60)
    cutoff = now - timedelta(days=30)

    def make(user_id, created_at):
        return notifications.create_notification(
            {"user_id": user_id, "type": "like", "message": "liked your meme", "created_at": created_at}
        )

    await make("u1", cutoff - timedelta(seconds=1))
    await make("u2", cutoff - timedelta(days=10))
    boundary = await make("u1", cutoff)
    recent = await make("u1", now - timedelta(days=1))

    assert await notifications.cleanup_old_notifications(now=now) == 2

    remaining = await notifications.get_user_notifications("u1")
    assert {n.id for n in remaining} == {boundary.id, recent.id}
    assert await notifications.get_user_notifications("u2") == []


@pytest.mark.asyncio
async def test_cleanup_failure_is_logged_not_raised(notifications, store):
    """Test the sweep masks store failures."""
    store.fail_on.add("query")
    assert await notifications.cleanup_old_notifications() == 0


@pytest.mark.asyncio
async def test_subscribe_to_notifications(notifications):
    """Test the live notification feed."""
    received = []
    subscription = await notifications.subscribe_to_notifications(
        "u1", lambda feed: received.append([(n.from_user_id, n.read) for n in feed])
    )

    first = await notifications.like("a", "u1", "m1", "T")
    await notifications.like("b", "u1", "m2", "T")
    await notifications.like("b", "u2", "m2", "T")
    await notifications.mark_as_read(first.id)
    await subscription.flush()
    subscription.unsubscribe()

    assert received == [
        [],
        [("a", False)],
        [("b", False), ("a", False)],
        [("b", False), ("a", True)],
    ]


@pytest.mark.asyncio
async def test_naive_timestamps_are_treated_as_utc(notifications, clock):
    """Test a created_at without timezone is stored as UTC and expires normally."""
    old = await notifications.create_notification(
        {
            "user_id": "u1",
            "type": "like",
            "message": "liked your meme",
            "created_at": datetime(2000, 1, 1),
        }
    )
    recent = await notifications.like("a", "u1", "m1", "T")

    assert old.created_at == datetime(2000, 1, 1, tzinfo=timezone.utc)
    feed = await notifications.get_user_notifications("u1")
    assert [n.id for n in feed] == [recent.id, old.id]
    assert all(n.created_at.tzinfo is not None for n in feed)

    assert await notifications.cleanup_old_notifications() == 1
    assert [n.id for n in await notifications.get_user_notifications("u1")] == [recent.id]


@pytest.mark.asyncio
async def test_cleanup_accepts_a_naive_now(notifications, clock):
    """Test a naive cleanup time is read as UTC."""
    await notifications.like("a", "u1", "m1", "T")
    later = (clock.now + timedelta(days=31)).replace(tzinfo=None)

    assert await notifications.cleanup_old_notifications(now=later) == 1
