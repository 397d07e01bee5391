"""Tests for the account-deletion cascade."""

import pytest

from marketchat.errors import ValidationError
from marketchat.repositories.device_repository import DeviceRepository


async def chat(service, actor, other, listing, text):
    conversation = await service.get_or_create_conversation(actor, other, listing)
    await service.send_message(conversation.id, actor, text)
    return conversation


async def test_partial_cascade_keeps_thread_for_other_party(service, cleanup_service, marketplace) -> None:
    bike = await chat(service, "u1", "u2", "L9", "Is this available?")
    tent = await chat(service, "u3", "u1", "L5", "Still have the tent?")
    await DeviceRepository(marketplace).register("u1", "fcm", "token-alice")

    report = await cleanup_service.handle_account_deleted("u1")

    assert sorted(report.conversations_updated) == sorted([bike.id, tent.id])
    assert report.conversations_deleted == []
    assert report.listings_deleted == 1
    assert report.media_deleted == 2
    assert report.devices_deleted == 1
    assert report.user_deleted is True

    remaining = await service.get_conversation(bike.id, "u2")
    assert remaining.participants == ["u2"]
    assert remaining.visible_to == {"u2"}
    assert remaining.last_message_text == "Is this available?"
    page = await service.get_history(bike.id, "u2")
    assert len(page.items) == 1

    assert await marketplace["listings"].find_one({"_id": "L5"}) is None
    assert await marketplace["users"].find_one({"_id": "u1"}) is None
    assert await marketplace["devices"].count_documents({"user_id": "u1"}) == 0


async def test_second_deletion_removes_the_thread(service, cleanup_service, marketplace) -> None:
    bike = await chat(service, "u1", "u2", "L9", "Is this available?")
    await service.send_message(bike.id, "u2", "Yes!")

    await cleanup_service.handle_account_deleted("u1")
    report = await cleanup_service.handle_account_deleted("u2")

    assert report.conversations_deleted == [bike.id]
    assert report.messages_deleted == 2
    assert await marketplace["conversations"].count_documents({}) == 0
    assert await marketplace["messages"].count_documents({}) == 0


async def test_rerun_is_harmless(service, cleanup_service) -> None:
    await chat(service, "u1", "u2", "L9", "hello")
    await cleanup_service.handle_account_deleted("u1")

    report = await cleanup_service.handle_account_deleted("u1")

    assert report.conversations_updated == []
    assert report.conversations_deleted == []
    assert report.listings_deleted == 0
    assert report.user_deleted is False


async def test_media_failure_does_not_abort(cleanup_service, media_store, marketplace) -> None:
    media_store.delete_url.side_effect = [RuntimeError("bucket unavailable"), True]

    report = await cleanup_service.handle_account_deleted("u1")

    assert report.media_failed == 1
    assert report.media_deleted == 1
    assert report.listings_deleted == 1
    assert await marketplace["listings"].count_documents({"seller_id": "u1"}) == 0


async def test_remaining_participant_is_notified(service, cleanup_service, bus) -> None:
    bike = await chat(service, "u1", "u2", "L9", "hello")
    received = []

    async def collect(message):
        received.append(message)

    subscription = await bus.subscribe("user:u2", collect)
    await cleanup_service.handle_account_deleted("u1")
    await subscription.cancel()

    assert any(bike.id in message for message in received)


async def test_requires_actor(cleanup_service) -> None:
    with pytest.raises(ValidationError):
        await cleanup_service.handle_account_deleted("")
