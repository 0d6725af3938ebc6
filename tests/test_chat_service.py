import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi import BackgroundTasks, HTTPException
from sqlalchemy.exc import OperationalError

from models import Message
from routers.chat import repository as chat_repository
from routers.chat import service
from routers.chat.schemas import LocationPayload, SendMessageRequest
from utils.redis_pubsub import MESSAGE_CHANGES_CHANNEL


@pytest.fixture
def published(monkeypatch):
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(service, "publish_best_effort", mock)
    monkeypatch.setattr(service.chat_redis, "set_typing_flag", AsyncMock())
    monkeypatch.setattr(service.chat_redis, "clear_typing_flag", AsyncMock())
    return mock


def _published_types(mock, channel=None):
    return [
        call.args[1]["type"]
        for call in mock.call_args_list
        if channel is None or call.args[0] == channel
    ]


# --- history ---


@pytest.mark.asyncio
async def test_history_is_ordered_by_created_at_then_id(
    test_db, alice, bob, make_conversation, add_message, base_time, published
):
    conv = make_conversation(alice.id, bob.id)
    late = add_message(conv, alice.id, "third", created_at=base_time + timedelta(minutes=5))
    first = add_message(conv, bob.id, "first", created_at=base_time)
    tie = add_message(conv, alice.id, "second", created_at=base_time)

    result = await service.load_history(test_db, current_user=alice, conversation_id=conv.id)

    assert [m["id"] for m in result["messages"]] == [first.id, tie.id, late.id]
    assert result["messages"][0]["sender_profile"]["full_name"] == "Bob Berger"


@pytest.mark.asyncio
async def test_history_marks_only_counterpart_messages_read(
    test_db, alice, bob, make_conversation, add_message, base_time, published
):
    conv = make_conversation(alice.id, bob.id)
    mine = add_message(conv, alice.id, "from alice", created_at=base_time)
    theirs = add_message(conv, bob.id, "from bob", created_at=base_time + timedelta(seconds=1))

    result = await service.load_history(test_db, current_user=alice, conversation_id=conv.id)

    assert result["marked_read"] == 1
    test_db.expire_all()
    assert test_db.get(Message, mine.id).read_at is None
    assert test_db.get(Message, theirs.id).read_at is not None
    assert "READ" in _published_types(published)
    assert "UPDATE" in _published_types(published, MESSAGE_CHANGES_CHANNEL)


@pytest.mark.asyncio
async def test_read_at_is_never_overwritten(
    test_db, alice, bob, make_conversation, add_message, base_time, published
):
    conv = make_conversation(alice.id, bob.id)
    original = base_time - timedelta(days=1)
    add_message(conv, bob.id, "old", created_at=base_time, read_at=original)

    result = await service.load_history(test_db, current_user=alice, conversation_id=conv.id)

    assert result["marked_read"] == 0
    assert result["messages"][0]["read_at"] == original.isoformat()
    assert published.await_count == 0


@pytest.mark.asyncio
async def test_history_loads_sender_profiles_in_one_query(
    test_db, alice, bob, make_conversation, add_message, base_time, published, monkeypatch
):
    conv = make_conversation(alice.id, bob.id)
    for i in range(6):
        add_message(conv, alice.id if i % 2 else bob.id, f"m{i}", created_at=base_time + timedelta(seconds=i))

    calls = []
    original = chat_repository.list_profiles_by_ids

    def counting(db, *, profile_ids):
        calls.append(set(profile_ids))
        return original(db, profile_ids=profile_ids)

    monkeypatch.setattr(chat_repository, "list_profiles_by_ids", counting)
    await service.load_history(test_db, current_user=alice, conversation_id=conv.id)

    assert calls == [{alice.id, bob.id}]


@pytest.mark.asyncio
async def test_history_requires_participation(test_db, alice, bob, carol, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    with pytest.raises(HTTPException) as exc:
        await service.load_history(test_db, current_user=carol, conversation_id=conv.id)
    assert exc.value.status_code == 403

    with pytest.raises(HTTPException) as exc:
        await service.load_history(test_db, current_user=carol, conversation_id="missing")
    assert exc.value.status_code == 404


def test_chat_disabled(test_db, alice, monkeypatch):
    monkeypatch.setattr(service, "CHAT_ENABLED", False)
    with pytest.raises(HTTPException) as exc:
        service.list_conversations(test_db, current_user=alice)
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_mark_single_message_read(
    test_db, alice, bob, make_conversation, add_message, base_time, published
):
    conv = make_conversation(alice.id, bob.id)
    msg = add_message(conv, bob.id, "hi", created_at=base_time)

    first = await service.mark_message_read(test_db, current_user=alice, message_id=msg.id)
    second = await service.mark_message_read(test_db, current_user=alice, message_id=msg.id)

    assert first["updated"] is True
    assert second["updated"] is False
    assert first["read_at"] == second["read_at"]
    assert _published_types(published).count("READ") == 1


@pytest.mark.asyncio
async def test_sender_cannot_mark_own_message(
    test_db, alice, bob, make_conversation, add_message, base_time, published
):
    conv = make_conversation(alice.id, bob.id)
    msg = add_message(conv, alice.id, "mine", created_at=base_time)

    result = await service.mark_message_read(test_db, current_user=alice, message_id=msg.id)
    assert result == {"message_id": msg.id, "read_at": None, "updated": False}


@pytest.mark.asyncio
async def test_failed_mark_read_is_swallowed(
    test_db, alice, bob, make_conversation, add_message, base_time, published, monkeypatch
):
    conv = make_conversation(alice.id, bob.id)
    msg = add_message(conv, bob.id, "hi", created_at=base_time)

    def db_down(*args, **kwargs):
        raise OperationalError("UPDATE messages", {}, Exception("db down"))

    monkeypatch.setattr(chat_repository, "mark_message_read", db_down)
    result = await service.mark_message_read(test_db, current_user=alice, message_id=msg.id)

    assert result == {"message_id": msg.id, "read_at": None, "updated": False}
    assert published.await_count == 0


def test_live_mark_read_respects_sender(test_db, alice, bob, make_conversation, add_message, base_time):
    conv = make_conversation(alice.id, bob.id)
    msg = add_message(conv, bob.id, "hi", created_at=base_time)

    assert service.mark_live_message_read(msg.id, bob.id) is None
    read_at = service.mark_live_message_read(msg.id, alice.id)
    assert read_at is not None
    assert service.mark_live_message_read(msg.id, alice.id) is None
    test_db.refresh(msg)
    assert msg.read_at == read_at


# --- sending ---


@pytest.mark.asyncio
async def test_send_text_stores_and_publishes(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    tasks = BackgroundTasks()

    payload = await service.send_message(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        request=SendMessageRequest(content="Hi @[Bob Berger](%s) " % bob.id),
        background_tasks=tasks,
    )

    assert payload["content_kind"] == "text"
    assert payload["sender_profile"]["full_name"] == "Alice Adler"
    assert test_db.query(Message).count() == 1
    assert _published_types(published) == [
        "TYPING_STOP",
        "INSERT",
        "INSERT",
    ]
    change = published.call_args_list[-1].args
    assert change[0] == MESSAGE_CHANGES_CHANNEL
    assert set(change[1]["participant_ids"]) == {alice.id, bob.id}
    assert len(tasks.tasks) == 1
    service.chat_redis.clear_typing_flag.assert_awaited_once_with(conv.id, alice.id)


@pytest.mark.asyncio
async def test_send_bumps_conversation_updated_at(
    test_db, alice, bob, make_conversation, base_time, published
):
    conv = make_conversation(alice.id, bob.id, updated_at=base_time)
    payload = await service.send_message(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        request=SendMessageRequest(content="bump"),
        background_tasks=BackgroundTasks(),
    )
    test_db.refresh(conv)
    assert conv.updated_at.isoformat() == payload["created_at"]


@pytest.mark.asyncio
async def test_empty_text_is_rejected(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    for content in ("", "   ", "<b></b>"):
        with pytest.raises(HTTPException) as exc:
            await service.send_message(
                test_db,
                current_user=alice,
                conversation_id=conv.id,
                request=SendMessageRequest(content=content),
                background_tasks=BackgroundTasks(),
            )
        assert exc.value.status_code == 400
    assert test_db.query(Message).count() == 0


@pytest.mark.asyncio
async def test_media_without_caption(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    payload = await service.send_message(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        request=SendMessageRequest(media_url="https://cdn/p.jpg", media_type="image"),
        background_tasks=BackgroundTasks(),
    )
    assert payload["content"] == ""
    assert payload["content_kind"] == "image"
    assert payload["rendered"]["url"] == "https://cdn/p.jpg"


@pytest.mark.asyncio
async def test_media_fields_must_come_together(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    for request in (
        SendMessageRequest(media_type="image"),
        SendMessageRequest(media_url="https://cdn/p.jpg"),
    ):
        with pytest.raises(HTTPException) as exc:
            await service.send_message(
                test_db,
                current_user=alice,
                conversation_id=conv.id,
                request=request,
                background_tasks=BackgroundTasks(),
            )
        assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_gif_uses_title_placeholder(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    payload = await service.send_message(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        request=SendMessageRequest(media_url="https://gif/1", media_type="gif", gif_title="party"),
        background_tasks=BackgroundTasks(),
    )
    assert payload["content"] == "GIF: party"
    assert payload["content_kind"] == "gif"


@pytest.mark.asyncio
async def test_location_message(test_db, alice, bob, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    payload = await service.send_message(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        request=SendMessageRequest(location=LocationPayload(latitude=48.1, longitude=11.5)),
        background_tasks=BackgroundTasks(),
    )
    assert payload["content"] == "My current location"
    assert payload["location_data"] == {"latitude": 48.1, "longitude": 11.5}
    assert payload["content_kind"] == "location"


@pytest.mark.asyncio
async def test_share_profile(test_db, alice, bob, carol, make_conversation, published):
    conv = make_conversation(alice.id, bob.id)
    payload = await service.share_profile(
        test_db,
        current_user=alice,
        conversation_id=conv.id,
        profile_id=carol.id,
        background_tasks=BackgroundTasks(),
    )
    assert payload["media_type"] == "profile"
    assert json.loads(payload["content"])["full_name"] == "Carol Cramer"
    assert payload["rendered"]["profile_id"] == carol.id

    with pytest.raises(HTTPException) as exc:
        await service.share_profile(
            test_db,
            current_user=alice,
            conversation_id=conv.id,
            profile_id="nobody",
            background_tasks=BackgroundTasks(),
        )
    assert exc.value.status_code == 404


# --- conversation list ---


def test_conversation_list_unread_preview_and_order(
    test_db, alice, bob, carol, make_conversation, add_message, base_time
):
    with_bob = make_conversation(alice.id, bob.id, updated_at=base_time)
    with_carol = make_conversation(alice.id, carol.id, updated_at=base_time + timedelta(hours=1))
    add_message(with_bob, bob.id, "one", created_at=base_time)
    add_message(with_bob, bob.id, "two", created_at=base_time + timedelta(seconds=1))
    add_message(with_bob, alice.id, "mine", created_at=base_time + timedelta(seconds=2))
    add_message(with_carol, carol.id, "", created_at=base_time, media_url="https://x", media_type="image")

    result = service.list_conversations(test_db, current_user=alice)["conversations"]

    assert [c["conversation_id"] for c in result] == [with_carol.id, with_bob.id]
    bob_entry = result[1]
    assert bob_entry["unread_count"] == 2
    assert bob_entry["last_message"]["preview"] == "mine"
    assert bob_entry["other_user"]["full_name"] == "Bob Berger"
    assert result[0]["last_message"]["preview"] == "Attachment"


def test_support_conversation_is_pinned(
    test_db, alice, bob, make_conversation, base_time, monkeypatch
):
    support_id = "00000000-0000-0000-0000-00000005a990"
    monkeypatch.setattr(service, "SUPPORT_PROFILE_ID", support_id)
    make_conversation(alice.id, bob.id, updated_at=base_time + timedelta(days=3))
    support_conv = make_conversation(alice.id, support_id, updated_at=base_time)

    result = service.list_conversations(test_db, current_user=alice)["conversations"]
    assert result[0]["conversation_id"] == support_conv.id
    assert result[0]["is_pinned"] is True
    assert result[1]["is_pinned"] is False


def test_conversation_search_filters_by_peer_name(test_db, alice, bob, carol, make_conversation):
    make_conversation(alice.id, bob.id)
    make_conversation(alice.id, carol.id)
    result = service.list_conversations(test_db, current_user=alice, search="CAROL")["conversations"]
    assert [c["other_user"]["id"] for c in result] == [carol.id]


def test_incremental_summary_skips_foreign_conversations(
    test_db, alice, bob, carol, make_conversation
):
    mine = make_conversation(alice.id, bob.id)
    foreign = make_conversation(bob.id, carol.id)
    summaries = service.compute_conversation_list(alice.id, [mine.id, foreign.id])
    assert [s["conversation_id"] for s in summaries] == [mine.id]


def test_get_or_create_conversation_is_idempotent(test_db, alice, bob):
    first = service.get_or_create_conversation(test_db, current_user=alice, peer_id=bob.id)
    second = service.get_or_create_conversation(test_db, current_user=bob, peer_id=alice.id)
    assert first["created"] is True
    assert second["created"] is False
    assert first["conversation_id"] == second["conversation_id"]


def test_get_or_create_conversation_errors(test_db, alice):
    with pytest.raises(HTTPException) as exc:
        service.get_or_create_conversation(test_db, current_user=alice, peer_id=alice.id)
    assert exc.value.status_code == 400
    with pytest.raises(HTTPException) as exc:
        service.get_or_create_conversation(test_db, current_user=alice, peer_id="ghost")
    assert exc.value.status_code == 404


# --- search ---


def test_mention_search_empty_query_returns_first_five(test_db, alice):
    result = service.search_mentions(test_db, current_user=alice, query="")
    names = [c["full_name"] for c in result["candidates"]]
    assert len(names) == 5
    assert names == sorted(names)
    assert "Alice Adler" not in names


def test_mention_search_matches_substring(test_db, alice):
    result = service.search_mentions(test_db, current_user=alice, query="doe")
    assert [c["full_name"] for c in result["candidates"]] == ["Jane Doe"]


def test_name_search_treats_wildcards_literally(test_db, alice):
    for query in ("_", "%", "a_", "%e"):
        assert service.search_mentions(test_db, current_user=alice, query=query)["candidates"] == []
    assert service.search_profiles(test_db, current_user=alice, query="__")["candidates"] == []


def test_profile_search_requires_two_characters(test_db, alice):
    assert service.search_profiles(test_db, current_user=alice, query="b")["candidates"] == []
    result = service.search_profiles(test_db, current_user=alice, query="be")
    assert [c["full_name"] for c in result["candidates"]] == ["Bob Berger"]


# --- typing ---


@pytest.mark.asyncio
async def test_typing_broadcast_sets_flag_and_publishes(
    test_db, alice, bob, make_conversation, published
):
    conv = make_conversation(alice.id, bob.id)
    result = await service.broadcast_typing(
        test_db, current_user=alice, conversation_id=conv.id, event="TYPING_START"
    )
    assert result == {"status": "accepted", "event": "TYPING_START", "delivered": True}
    service.chat_redis.set_typing_flag.assert_awaited_once()
    channel, event = published.call_args.args
    assert channel == f"typing-{conv.id}"
    assert event == {"type": "TYPING_START", "user_id": alice.id, "user_name": "Alice Adler"}


@pytest.mark.asyncio
async def test_typing_broadcast_failure_is_not_an_error(
    test_db, alice, bob, make_conversation, published
):
    published.return_value = False
    conv = make_conversation(alice.id, bob.id)
    result = await service.broadcast_typing(
        test_db, current_user=alice, conversation_id=conv.id, event="TYPING_STOP"
    )
    assert result["delivered"] is False
    service.chat_redis.clear_typing_flag.assert_awaited_once()


# --- presence ---


@pytest.mark.asyncio
async def test_join_presence_publishes_full_snapshot(monkeypatch, published):
    monkeypatch.setattr(service.chat_redis, "join_presence", AsyncMock(return_value={"b", "a"}))
    result = await service.join_presence_for_user(
        current_user=type("P", (), {"id": "a"})(), scope="online-users"
    )
    assert result == {"scope": "online-users", "online": ["a", "b"], "available": True}
    channel, event = published.call_args.args
    assert channel == "presence:online-users"
    assert event == {"type": "SYNC", "scope": "online-users", "online": ["a", "b"]}


@pytest.mark.asyncio
async def test_cannot_join_someone_elses_personal_scope(published):
    with pytest.raises(HTTPException) as exc:
        await service.join_presence_for_user(
            current_user=type("P", (), {"id": "a"})(), scope="online-users:b"
        )
    assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_leave_presence_stamps_last_seen(test_db, alice, monkeypatch, published):
    monkeypatch.setattr(service.chat_redis, "leave_presence", AsyncMock(return_value=set()))
    await service.leave_presence("online-users", alice.id)
    test_db.expire_all()
    assert test_db.get(type(alice), alice.id).last_seen is not None


@pytest.mark.asyncio
async def test_presence_snapshot_unavailable(monkeypatch):
    monkeypatch.setattr(service.chat_redis, "presence_snapshot", AsyncMock(return_value=None))
    result = await service.get_presence_snapshot(scope="online-users")
    assert result == {"scope": "online-users", "online": [], "available": False}


@pytest.mark.asyncio
async def test_peer_status(test_db, alice, bob, make_conversation, monkeypatch):
    conv = make_conversation(alice.id, bob.id)
    monkeypatch.setattr(service.chat_redis, "presence_snapshot", AsyncMock(return_value={bob.id}))
    result = await service.get_peer_status(test_db, current_user=alice, conversation_id=conv.id)
    assert result["user_id"] == bob.id
    assert result["online"] is True
    assert result["status_text"] == "online"

    monkeypatch.setattr(service.chat_redis, "presence_snapshot", AsyncMock(return_value=set()))
    result = await service.get_peer_status(test_db, current_user=alice, conversation_id=conv.id)
    assert result["online"] is False
    assert result["status_text"] == "offline"
