import asyncio

import pytest

from fake_mail import FakeMailClient, inbox
from stormbox.domain.models import FolderKey
from stormbox.errors import RemoteMutationError, TransportError
from stormbox.services.mailbox_cache import PagedMailboxCache
from stormbox.services.mailbox_directory import MailboxDirectory
from stormbox.services.mutations import OptimisticMutationCoordinator

INBOX = FolderKey("inbox", "receivedAt")


async def _setup(ids, seen_ids=(), unread=0, total=0):
    client = FakeMailClient({"inbox": ids}, seen_ids=seen_ids)
    client.mailboxes = [inbox(unread=unread, total=total)]
    directory = MailboxDirectory(client)
    await directory.load()
    cache = PagedMailboxCache(client, debounce_sec=0)
    await cache.switch_folder(INBOX)
    errors = []
    coordinator = OptimisticMutationCoordinator(client, cache, directory, report_error=errors.append)
    return client, cache, directory, coordinator, errors


@pytest.mark.asyncio
async def test_delete_unread_message_updates_cache_and_counts():
    client, cache, directory, coordinator, errors = await _setup(["a", "b", "c"], unread=3, total=3)
    removed = []

    assert await coordinator.delete(INBOX, "b", on_removed=removed.append) is True

    assert [message.id for message in cache.messages(INBOX)] == ["a", "c"]
    assert cache.total_count(INBOX) == 2
    assert directory.get("inbox").unread_count == 2
    assert directory.get("inbox").total_count == 2
    assert removed == ["b"]
    assert client.delete_calls == [("b", "inbox")]
    assert errors == []


@pytest.mark.asyncio
async def test_delete_seen_message_keeps_unread_count():
    client, cache, directory, coordinator, _ = await _setup(["a", "b"], seen_ids={"a"}, unread=1, total=2)

    await coordinator.delete(INBOX, "a")

    assert directory.get("inbox").unread_count == 1
    assert directory.get("inbox").total_count == 1


@pytest.mark.asyncio
async def test_delete_unknown_message_does_nothing():
    client, cache, directory, coordinator, _ = await _setup(["a"], unread=1, total=1)

    assert await coordinator.delete(INBOX, "zzz") is False

    assert client.delete_calls == []
    assert cache.total_count(INBOX) == 1


@pytest.mark.asyncio
async def test_failed_delete_reports_and_refetches():
    client, cache, directory, coordinator, errors = await _setup(["a", "b"], unread=2, total=2)
    client.delete_error = RemoteMutationError("Email/set failed", ["Email/set/notUpdated/b: forbidden"])

    assert await coordinator.delete(INBOX, "b") is False

    assert errors and errors[0].startswith("Delete failed:")
    # no rollback; the refetch brings the server copy back
    assert [message.id for message in cache.messages(INBOX)] == ["a", "b"]
    assert not coordinator.is_delete_pending("b")


@pytest.mark.asyncio
async def test_second_delete_while_pending_is_ignored():
    client, cache, directory, coordinator, _ = await _setup(["a", "b"], unread=2, total=2)
    gate = asyncio.Event()
    original = client.move_or_destroy_message

    async def slow_delete(message_id, source_mailbox_id):
        await gate.wait()
        await original(message_id, source_mailbox_id)

    client.move_or_destroy_message = slow_delete
    first = asyncio.ensure_future(coordinator.delete(INBOX, "a"))
    await asyncio.sleep(0)

    assert coordinator.is_delete_pending("a")
    assert await coordinator.delete(INBOX, "a") is False
    gate.set()
    assert await first is True
    assert client.delete_calls == [("a", "inbox")]


@pytest.mark.asyncio
async def test_mark_seen_patches_cache_once():
    client, cache, directory, coordinator, _ = await _setup(["a"], unread=1, total=1)

    assert await coordinator.mark_seen(INBOX, "a") is True
    assert await coordinator.mark_seen(INBOX, "a") is False

    assert cache.find(INBOX, "a").seen
    assert directory.get("inbox").unread_count == 0
    assert client.seen_calls == [("a", True)]


@pytest.mark.asyncio
async def test_failed_mark_seen_reports_and_refetches():
    client, cache, directory, coordinator, errors = await _setup(["a"], unread=1, total=1)
    client.seen_error = TransportError("timeout")
    query_calls = len(client.query_calls)

    await coordinator.mark_seen(INBOX, "a")

    assert errors == ["Mark as read failed: timeout"]
    assert len(client.query_calls) == query_calls + 1
    assert not cache.find(INBOX, "a").seen
