"""Tests for ChatService: identity, send, read state, visibility, unread."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from marketchat.errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from marketchat.repositories.device_repository import DeviceRepository
from marketchat.services.events import ChatEventPublisher


async def open_bike_chat(service):
    """u1 contacts the seller (u2) of listing L9."""
    return await service.get_or_create_conversation("u1", "u2", "L9")


class TestGetOrCreate:

    async def test_creates_conversation_with_snapshot_fields(self, service) -> None:
        conversation = await open_bike_chat(service)

        assert conversation.id == "u1_u2_L9"
        assert conversation.participants == ["u1", "u2"]
        assert conversation.visible_to == {"u1", "u2"}
        assert conversation.read_by == set()
        assert conversation.participant_display_names == {"u1": "alice", "u2": "bob"}
        assert conversation.listing_title == "Road bike"
        assert conversation.listing_image_url == "https://cdn.example.com/listings/L9/1.jpg"
        assert conversation.last_message_text == ""
        assert conversation.last_message_sender_id is None
        # nobody has read a fresh thread yet
        assert conversation.is_unread("u1") is True
        assert conversation.is_unread("u2") is True

    async def test_identity_is_order_independent_and_idempotent(self, service, marketplace) -> None:
        first = await service.get_or_create_conversation("u1", "u2", "L9")
        second = await service.get_or_create_conversation("u2", "u1", "L9")
        third = await service.get_or_create_conversation("u1", "u2", "L9")

        assert first.id == second.id == third.id
        assert await marketplace["conversations"].count_documents({}) == 1

    async def test_concurrent_opens_converge(self, service, marketplace) -> None:
        results = await asyncio.gather(
            service.get_or_create_conversation("u1", "u2", "L9"),
            service.get_or_create_conversation("u2", "u1", "L9"),
        )
        assert {c.id for c in results} == {"u1_u2_L9"}
        assert await marketplace["conversations"].count_documents({}) == 1

    async def test_lost_create_race_rereads(self, service, monkeypatch) -> None:
        await open_bike_chat(service)
        repo = service._conversation_repo
        real_get = repo.get
        calls = {"n": 0}

        async def racing_get(conversation_id, session=None):
            # first read misses the row another client just inserted
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await real_get(conversation_id, session=session)

        monkeypatch.setattr(repo, "get", racing_get)
        conversation = await service.get_or_create_conversation("u2", "u1", "L9")

        assert conversation.id == "u1_u2_L9"
        assert calls["n"] == 2

    async def test_second_conflict_is_transient(self, service, monkeypatch) -> None:
        await open_bike_chat(service)
        monkeypatch.setattr(service._conversation_repo, "get", AsyncMock(return_value=None))

        with pytest.raises(TransientStoreError):
            await service.get_or_create_conversation("u1", "u2", "L9")

    async def test_insert_duplicate_is_conflict(self, service) -> None:
        conversation = await open_bike_chat(service)
        doc = {
            "_id": conversation.id,
            "participants": ["u1", "u2"],
            "listing_id": "L9",
            "last_message_timestamp": conversation.created_at,
            "created_at": conversation.created_at,
        }
        with pytest.raises(ConflictError):
            await service._conversation_repo.insert(doc)

    async def test_resurfaces_hidden_thread_without_touching_last_message(self, service) -> None:
        conversation = await open_bike_chat(service)
        await service.send_message(conversation.id, "u1", "Is this available?")
        before = await service.get_conversation(conversation.id, "u1")
        await service.hide_conversation(conversation.id, "u1")

        reopened = await service.get_or_create_conversation("u1", "u2", "L9")

        assert reopened.visible_to == {"u1", "u2"}
        assert reopened.last_message_text == "Is this available?"
        assert reopened.last_message_sender_id == "u1"
        assert reopened.last_message_timestamp > before.last_message_timestamp

    async def test_missing_listing(self, service) -> None:
        with pytest.raises(NotFoundError):
            await service.get_or_create_conversation("u1", "u2", "nope")

    async def test_unknown_user_gets_placeholder_name(self, service) -> None:
        conversation = await service.get_or_create_conversation("u1", "ghost", "L9")
        assert conversation.participant_display_names["ghost"] == "Unknown User"

    async def test_start_for_listing_targets_seller(self, service) -> None:
        conversation = await service.start_conversation_for_listing("u1", "L9")
        assert conversation.id == "u1_u2_L9"

    async def test_seller_cannot_message_own_listing(self, service) -> None:
        with pytest.raises(ValidationError):
            await service.start_conversation_for_listing("u2", "L9")


class TestSendMessage:

    async def test_send_resets_read_set_and_marks_recipient_unread(self, service) -> None:
        conversation = await open_bike_chat(service)
        message = await service.send_message(conversation.id, "u1", "  hi  ")

        assert message.text == "hi"
        assert message.sender_id == "u1"
        assert message.conversation_id == conversation.id

        current = await service.get_conversation(conversation.id, "u1")
        assert current.read_by == {"u1"}
        assert current.last_message_text == "hi"
        assert current.last_message_timestamp == message.timestamp
        assert current.is_unread("u2") is True
        assert current.is_unread("u1") is False

    async def test_rapid_messages_keep_send_order(self, service) -> None:
        conversation = await open_bike_chat(service)
        first = await service.send_message(conversation.id, "u1", "first")
        second = await service.send_message(conversation.id, "u2", "second")

        assert first.timestamp < second.timestamp
        page = await service.get_history(conversation.id, "u1")
        assert [m.text for m in page.items] == ["first", "second"]
        current = await service.get_conversation(conversation.id, "u1")
        assert current.last_message_sender_id == "u2"
        assert current.read_by == {"u2"}

    @pytest.mark.parametrize("text", ["", "   ", "\n"])
    async def test_blank_text_rejected_before_write(self, service, marketplace, text: str) -> None:
        conversation = await open_bike_chat(service)
        with pytest.raises(ValidationError):
            await service.send_message(conversation.id, "u1", text)
        assert await marketplace["messages"].count_documents({}) == 0

    async def test_non_participant_rejected(self, service, marketplace) -> None:
        conversation = await open_bike_chat(service)
        with pytest.raises(ValidationError):
            await service.send_message(conversation.id, "u3", "let me in")
        assert await marketplace["messages"].count_documents({}) == 0

    async def test_missing_conversation(self, service) -> None:
        with pytest.raises(NotFoundError):
            await service.send_message("u1_u2_nope", "u1", "hello?")

    async def test_send_resurfaces_for_both_participants(self, service) -> None:
        conversation = await open_bike_chat(service)
        await service.hide_conversation(conversation.id, "u1")

        await service.send_message(conversation.id, "u2", "still interested?")

        current = await service.get_conversation(conversation.id, "u2")
        assert current.visible_to == {"u1", "u2"}

    async def test_notifies_recipients(self, service, marketplace, push) -> None:
        await DeviceRepository(marketplace).register("u2", "fcm", "token-bob")
        await DeviceRepository(marketplace).register("u1", "fcm", "token-alice")
        conversation = await open_bike_chat(service)

        await service.send_message(conversation.id, "u1", "Is this available?")

        push.send_fcm.assert_awaited_once_with(
            ["token-bob"],
            title="Road bike",
            body="Is this available?",
            data={"conversationId": "u1_u2_L9"},
        )

    async def test_push_failure_does_not_fail_send(self, service, marketplace, push) -> None:
        await DeviceRepository(marketplace).register("u2", "fcm", "token-bob")
        push.send_fcm.side_effect = RuntimeError("fcm down")
        conversation = await open_bike_chat(service)

        message = await service.send_message(conversation.id, "u1", "hello")

        assert message.text == "hello"
        assert await marketplace["messages"].count_documents({}) == 1

    async def test_bus_failure_does_not_fail_send(self, service) -> None:
        conversation = await open_bike_chat(service)
        service._publisher = ChatEventPublisher(AsyncMock(side_effect=ConnectionError("redis down")))

        message = await service.send_message(conversation.id, "u1", "hello")
        assert message.text == "hello"

    async def test_conversation_deleted_mid_send_leaves_no_message(self, service, marketplace, monkeypatch) -> None:
        conversation = await open_bike_chat(service)
        monkeypatch.setattr(service._conversation_repo, "apply_new_message", AsyncMock(return_value=None))

        with pytest.raises(NotFoundError):
            await service.send_message(conversation.id, "u1", "hello")
        assert await marketplace["messages"].count_documents({}) == 0


class TestReadAndHide:

    async def test_mark_read_is_idempotent(self, service) -> None:
        conversation = await open_bike_chat(service)
        await service.send_message(conversation.id, "u1", "hi")

        once = await service.mark_read(conversation.id, "u2")
        twice = await service.mark_read(conversation.id, "u2")

        assert once.read_by == twice.read_by == {"u1", "u2"}
        assert twice.is_unread("u2") is False

    async def test_mark_read_errors(self, service) -> None:
        conversation = await open_bike_chat(service)
        with pytest.raises(NotFoundError):
            await service.mark_read("missing", "u1")
        with pytest.raises(ValidationError):
            await service.mark_read(conversation.id, "u3")

    async def test_hide_only_touches_visibility(self, service) -> None:
        conversation = await open_bike_chat(service)
        await service.send_message(conversation.id, "u1", "hi")

        purged = await service.hide_conversation(conversation.id, "u1")

        assert purged is False
        current = await service.get_conversation(conversation.id, "u2")
        assert current.visible_to == {"u2"}
        assert current.participants == ["u1", "u2"]
        assert current.read_by == {"u1"}
        page = await service.get_history(conversation.id, "u2")
        assert len(page.items) == 1

    async def test_hidden_by_both_is_purged(self, service, marketplace) -> None:
        conversation = await open_bike_chat(service)
        await service.send_message(conversation.id, "u1", "hi")
        await service.send_message(conversation.id, "u2", "hello")

        assert await service.hide_conversation(conversation.id, "u1") is False
        assert await service.hide_conversation(conversation.id, "u2") is True

        assert await marketplace["conversations"].count_documents({}) == 0
        assert await marketplace["messages"].count_documents({}) == 0
        with pytest.raises(NotFoundError):
            await service.get_conversation(conversation.id, "u1")

    async def test_hide_errors(self, service) -> None:
        conversation = await open_bike_chat(service)
        with pytest.raises(NotFoundError):
            await service.hide_conversation("missing", "u1")
        with pytest.raises(ValidationError):
            await service.hide_conversation(conversation.id, "u3")

    async def test_purge_yields_to_a_concurrent_send(self, service, marketplace, monkeypatch) -> None:
        conversation = await open_bike_chat(service)
        await service.hide_conversation(conversation.id, "u1")
        repo = service._conversation_repo
        real_remove_viewer = repo.remove_viewer

        async def remove_then_send(conversation_id, actor_id):
            # the set is empty after the pull; a send lands before the purge
            hidden = await real_remove_viewer(conversation_id, actor_id)
            assert hidden.visible_to == set()
            await service.send_message(conversation_id, "u1", "still for sale?")
            return hidden

        monkeypatch.setattr(repo, "remove_viewer", remove_then_send)
        purged = await service.hide_conversation(conversation.id, "u2")

        assert purged is False
        current = await service.get_conversation(conversation.id, "u2")
        assert current.visible_to == {"u1", "u2"}
        assert current.last_message_text == "still for sale?"
        assert await marketplace["messages"].count_documents({"conversation_id": conversation.id}) == 1


class TestQueries:

    async def test_has_any_unread_tracks_visible_threads(self, service) -> None:
        conversation = await open_bike_chat(service)
        assert await service.has_any_unread("u2") is True
        await service.mark_read(conversation.id, "u2")
        assert await service.has_any_unread("u2") is False

        await service.send_message(conversation.id, "u1", "hi")
        assert await service.has_any_unread("u2") is True
        assert await service.has_any_unread("u1") is False

        await service.hide_conversation(conversation.id, "u2")
        assert await service.has_any_unread("u2") is False

    async def test_has_any_unread_covers_the_whole_inbox(self, service, marketplace) -> None:
        start = datetime(2026, 1, 1)
        docs = []
        for n in range(1001):
            buyer = f"b{n}"
            docs.append(
                {
                    "_id": f"{buyer}_u1_L{n}",
                    "participants": [buyer, "u1"],
                    "visible_to": ["u1"],
                    # only the oldest thread is unread for u1
                    "read_by": [buyer, "u1"] if n else [buyer],
                    "listing_id": f"L{n}",
                    "last_message_text": "hello",
                    "last_message_sender_id": buyer,
                    "last_message_timestamp": start + timedelta(minutes=n),
                    "created_at": start,
                }
            )
        await marketplace["conversations"].insert_many(docs)

        assert await service.has_any_unread("u1") is True

    async def test_inbox_items_are_shaped_for_the_caller(self, service) -> None:
        bike = await open_bike_chat(service)
        lamp = await service.get_or_create_conversation("u1", "u3", "L7")
        await service.send_message(bike.id, "u2", "yes it is")

        page = await service.list_inbox("u1")

        assert [item.conversation.id for item in page.items] == [bike.id, lamp.id]
        bike_item, lamp_item = page.items
        assert bike_item.display_name == "bob"
        assert bike_item.is_unread is True
        assert bike_item.display_last_message == "yes it is"
        assert lamp_item.display_name == "carol"
        assert lamp_item.display_last_message == "No messages yet."
        assert page.next_cursor is None

    async def test_inbox_pagination(self, service) -> None:
        bike = await open_bike_chat(service)
        lamp = await service.get_or_create_conversation("u1", "u3", "L7")

        first = await service.list_inbox("u1", limit=1)
        assert [i.conversation.id for i in first.items] == [lamp.id]
        assert first.next_cursor is not None

        second = await service.list_inbox("u1", limit=1, cursor=first.next_cursor)
        assert [i.conversation.id for i in second.items] == [bike.id]

    async def test_history_pagination_walks_backwards(self, service) -> None:
        conversation = await open_bike_chat(service)
        for n in range(5):
            await service.send_message(conversation.id, "u1" if n % 2 else "u2", f"m{n}")

        newest = await service.get_history(conversation.id, "u1", limit=2)
        assert [m.text for m in newest.items] == ["m3", "m4"]

        older = await service.get_history(conversation.id, "u1", limit=2, cursor=newest.next_cursor)
        assert [m.text for m in older.items] == ["m1", "m2"]

    async def test_outsiders_cannot_read(self, service) -> None:
        conversation = await open_bike_chat(service)
        with pytest.raises(NotFoundError):
            await service.get_conversation(conversation.id, "u3")
        with pytest.raises(NotFoundError):
            await service.get_history(conversation.id, "u3")


async def test_documented_scenario(service) -> None:
    conversation = await service.get_or_create_conversation("u1", "u2", "L9")
    assert conversation.id == "u1_u2_L9"

    await service.send_message(conversation.id, "u1", "Is this available?")
    state = await service.get_conversation(conversation.id, "u1")
    assert state.read_by == {"u1"}
    assert state.is_unread("u2") is True

    state = await service.mark_read(conversation.id, "u2")
    assert state.is_unread("u2") is False

    await service.hide_conversation(conversation.id, "u2")
    state = await service.get_conversation(conversation.id, "u1")
    assert state.visible_to == {"u1"}

    await service.send_message(conversation.id, "u2", "Yes!")
    state = await service.get_conversation(conversation.id, "u1")
    assert state.visible_to == {"u1", "u2"}
    assert state.read_by == {"u2"}
    assert state.is_unread("u1") is True
