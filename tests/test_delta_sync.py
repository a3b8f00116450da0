import asyncio

import pytest

from fake_mail import FakeMailClient, inbox, make_summary
from stormbox.domain.models import FolderKey, QueryChanges
from stormbox.errors import TransportError
from stormbox.services.delta_sync import (
    DeltaSyncEngine,
    ReconcileOutcome,
    SyncState,
    apply_changes,
    collect_new_unread,
)
from stormbox.services.mailbox_cache import CacheEntry, CachedPage, PagedMailboxCache
from stormbox.services.mailbox_directory import MailboxDirectory

INBOX = FolderKey("inbox", "receivedAt")


async def _loaded(ids, **client_kwargs):
    client = FakeMailClient({"inbox": ids}, **client_kwargs)
    cache = PagedMailboxCache(client, debounce_sec=0)
    await cache.switch_folder(INBOX)
    return client, cache


def _ids(cache):
    return [message.id for message in cache.messages(INBOX)]


async def _until_polled(client):
    for _ in range(20):
        if client.changes_calls:
            return
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_reconcile_applies_added_and_removed_to_first_page():
    client, cache = await _loaded(["m1", "m2", "m3", "m4"])
    client.summaries["m9"] = make_summary("m9")
    client.changes = QueryChanges(added=(("m9", 0),), removed=("m3",), new_query_state="Q2", total=4)
    engine = DeltaSyncEngine(client, cache)

    outcome = await engine.reconcile(INBOX)

    assert outcome is ReconcileOutcome.APPLIED
    assert _ids(cache) == ["m9", "m1", "m2", "m4"]
    assert cache.entry(INBOX).query_state == "Q2"
    assert cache.total_count(INBOX) == 4
    assert client.changes_calls == [("inbox", "Q1", "receivedAt")]
    assert engine.state(INBOX) is SyncState.IDLE


@pytest.mark.asyncio
async def test_empty_delta_moves_cursor_and_keeps_messages():
    client, cache = await _loaded(["m1", "m2"])
    client.changes = QueryChanges(new_query_state="Q2")
    applied = []
    engine = DeltaSyncEngine(client, cache, on_applied=lambda *args: applied.append(args))

    assert await engine.reconcile(INBOX) is ReconcileOutcome.APPLIED
    assert _ids(cache) == ["m1", "m2"]
    assert cache.entry(INBOX).query_state == "Q2"

    client.changes = QueryChanges(new_query_state="Q3")
    assert await engine.reconcile(INBOX) is ReconcileOutcome.APPLIED

    assert _ids(cache) == ["m1", "m2"]
    assert cache.entry(INBOX).query_state == "Q3"
    assert [call[1] for call in client.changes_calls] == ["Q1", "Q2"]
    assert applied == []
    assert client.get_calls[1:] == []


@pytest.mark.asyncio
async def test_transport_failure_leaves_entry_then_refresh_refetches():
    client, cache = await _loaded(["m1", "m2"])
    before = cache.entry(INBOX)
    client.changes = TransportError("connection reset")
    engine = DeltaSyncEngine(client, cache)

    assert await engine.reconcile(INBOX) is ReconcileOutcome.FAILED
    assert cache.entry(INBOX) is before

    client.ids_by_mailbox["inbox"] = ["m0", "m1", "m2"]
    client.summaries["m0"] = make_summary("m0")
    assert await engine.refresh(INBOX) is ReconcileOutcome.FAILED

    assert cache.entry(INBOX) is not before
    assert _ids(cache) == ["m0", "m1", "m2"]
    assert engine.last_outcome(INBOX) is ReconcileOutcome.FAILED


@pytest.mark.asyncio
async def test_server_error_field_counts_as_failure():
    client, cache = await _loaded(["m1"])
    client.changes = QueryChanges(error="cannotCalculateChanges")
    engine = DeltaSyncEngine(client, cache)

    assert await engine.reconcile(INBOX) is ReconcileOutcome.FAILED
    assert cache.entry(INBOX).query_state == "Q1"


@pytest.mark.asyncio
async def test_missing_cursor_is_not_reconcilable_and_refresh_loads_folder():
    client = FakeMailClient({"inbox": ["m1", "m2"]})
    cache = PagedMailboxCache(client, debounce_sec=0)
    cache.active_key = INBOX
    engine = DeltaSyncEngine(client, cache)

    assert await engine.reconcile(INBOX) is ReconcileOutcome.NOT_RECONCILABLE
    assert client.changes_calls == []

    await engine.refresh(INBOX)
    assert _ids(cache) == ["m1", "m2"]


@pytest.mark.asyncio
async def test_concurrent_reconcile_shares_one_server_call():
    client, cache = await _loaded(["m1", "m2"])
    client.changes = QueryChanges(removed=("m2",), new_query_state="Q2")
    client.changes_gate = asyncio.Event()
    engine = DeltaSyncEngine(client, cache)

    first = asyncio.ensure_future(engine.reconcile(INBOX))
    second = asyncio.ensure_future(engine.reconcile(INBOX))
    await _until_polled(client)
    assert engine.state(INBOX) is SyncState.POLLING
    client.changes_gate.set()

    assert await first is ReconcileOutcome.APPLIED
    assert await second is ReconcileOutcome.APPLIED
    assert len(client.changes_calls) == 1
    assert _ids(cache) == ["m1"]


@pytest.mark.asyncio
async def test_cursor_replaced_mid_flight_skips_the_delta():
    client, cache = await _loaded(["m1", "m2"])
    client.changes = QueryChanges(removed=("m1",), new_query_state="Q2")
    client.changes_gate = asyncio.Event()
    engine = DeltaSyncEngine(client, cache)

    pending = asyncio.ensure_future(engine.reconcile(INBOX))
    await _until_polled(client)
    client.query_state = "Q7"
    await cache.invalidate(INBOX)
    client.changes_gate.set()

    assert await pending is ReconcileOutcome.NOT_RECONCILABLE
    assert _ids(cache) == ["m1", "m2"]
    assert cache.entry(INBOX).query_state == "Q7"


@pytest.mark.asyncio
async def test_applied_delta_updates_directory_total_and_notifies():
    client, cache = await _loaded(["m1"])
    client.mailboxes = [inbox(unread=0, total=1)]
    directory = MailboxDirectory(client)
    await directory.load()
    client.summaries["m5"] = make_summary("m5")
    client.changes = QueryChanges(added=(("m5", 0),), new_query_state="Q2", total=2)
    applied = []
    engine = DeltaSyncEngine(client, cache, directory, on_applied=lambda *args: applied.append(args))

    await engine.reconcile(INBOX)

    assert directory.get("inbox").total_count == 2
    assert len(applied) == 1
    key, added, removed = applied[0]
    assert key == INBOX
    assert [message.id for message in added] == ["m5"]
    assert removed == []


@pytest.mark.asyncio
async def test_poll_loop_reconciles_active_folder():
    client, cache = await _loaded(["m1"])
    engine = DeltaSyncEngine(client, cache, poll_interval_sec=0.01)

    engine.start(lambda: INBOX, lambda: True)
    for _ in range(50):
        if client.changes_calls:
            break
        await asyncio.sleep(0.01)
    engine.stop()

    assert client.changes_calls
    assert not engine.running


def test_apply_changes_inserts_in_ascending_index_order():
    client = FakeMailClient({"inbox": ["a", "b", "c"]})
    page = CachedPage(
        ids=("a", "b", "c"),
        messages=tuple(client.summaries[message_id] for message_id in ("a", "b", "c")),
        total=3,
        query_state="Q1",
    )
    entry = CacheEntry(key=INBOX, pages=(page,))
    changes = QueryChanges(added=(("y", 3), ("x", 0)), removed=("b",), new_query_state="Q2", total=4)

    patched = apply_changes(entry, changes, [make_summary("x"), make_summary("y")])

    assert [message.id for message in patched.messages] == ["x", "a", "c", "y"]
    assert patched.query_state == "Q2"
    assert patched.total == 4


def test_collect_new_unread_tracks_known_ids():
    known = {"m1"}
    messages = [make_summary("m1"), make_summary("m2"), make_summary("m3", seen=True)]

    fresh = collect_new_unread(messages, known)

    assert [message.id for message in fresh] == ["m2"]
    assert known == {"m1", "m2", "m3"}
    assert collect_new_unread(messages, known) == []
