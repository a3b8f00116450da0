"""Paginated per-folder cache of message summaries.

Every entry is an immutable snapshot. Writers build a new entry from the
current one and swap it in without awaiting in between, so a delta patch and
an optimistic mutation landing in the same loop turn cannot drop each other.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace

from stormbox.constants import (
    CACHE_GC_AFTER_SEC,
    CACHE_STALE_AFTER_SEC,
    EMAIL_SUMMARY_PROPERTIES,
    FOLDER_SWITCH_DEBOUNCE_SEC,
    PAGE_SIZE,
    PREFETCH_PAGES,
)
from stormbox.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedPage:
    ids: tuple
    messages: tuple
    position: int = 0
    total: int | None = None
    query_state: str | None = None

    @property
    def next_position(self) -> int:
        return self.position + len(self.ids)


def page_has_more(page: CachedPage, page_size: int = PAGE_SIZE) -> bool:
    if isinstance(page.total, int):
        return page.next_position < page.total
    return len(page.ids) == page_size


@dataclass(frozen=True)
class CacheEntry:
    key: object
    pages: tuple = ()
    fetched_at: float = 0.0

    @property
    def messages(self) -> tuple:
        return tuple(message for page in self.pages for message in page.messages)

    @property
    def first_page(self):
        return self.pages[0] if self.pages else None

    @property
    def last_page(self):
        return self.pages[-1] if self.pages else None

    @property
    def query_state(self):
        first = self.first_page
        return first.query_state if first else None

    @property
    def total(self):
        first = self.first_page
        return first.total if first else None

    @property
    def next_position(self) -> int:
        last = self.last_page
        return last.next_position if last else 0

    def has_more(self, page_size: int = PAGE_SIZE) -> bool:
        last = self.last_page
        return page_has_more(last, page_size) if last else True

    def find(self, message_id):
        for page in self.pages:
            for message in page.messages:
                if message.id == message_id:
                    return message
        return None

    def map_pages(self, fn):
        return replace(self, pages=tuple(fn(index, page) for index, page in enumerate(self.pages)))


def mark_message_seen(entry: CacheEntry, message_id) -> CacheEntry:
    def _patch(_index, page):
        if not any(message.id == message_id and not message.seen for message in page.messages):
            return page
        return replace(
            page,
            messages=tuple(
                message.with_seen(True) if message.id == message_id else message for message in page.messages
            ),
        )

    return entry.map_pages(_patch)


def remove_message(entry: CacheEntry, message_id) -> CacheEntry:
    """Drop one message and count it out of every page total."""
    if entry.find(message_id) is None:
        return entry

    def _patch(_index, page):
        total = max(0, page.total - 1) if isinstance(page.total, int) else page.total
        return replace(
            page,
            messages=tuple(message for message in page.messages if message.id != message_id),
            total=total,
        )

    return entry.map_pages(_patch)


class PagedMailboxCache:
    def __init__(
        self,
        client,
        page_size=PAGE_SIZE,
        prefetch_pages=PREFETCH_PAGES,
        debounce_sec=FOLDER_SWITCH_DEBOUNCE_SEC,
        stale_after_sec=CACHE_STALE_AFTER_SEC,
        gc_after_sec=CACHE_GC_AFTER_SEC,
        clock=time.monotonic,
    ):
        self.client = client
        self.page_size = page_size
        self.prefetch_pages = prefetch_pages
        self.debounce_sec = debounce_sec
        self.stale_after_sec = stale_after_sec
        self.gc_after_sec = gc_after_sec
        self.clock = clock
        self.active_key = None
        self._entries = {}
        self._last_used = {}
        self._cascade = None
        self._cascade_key = None
        self._next_page_tasks = {}

    # ── Reads ──

    def entry(self, key):
        return self._entries.get(key)

    def messages(self, key):
        entry = self._entries.get(key)
        return entry.messages if entry else ()

    def find(self, key, message_id):
        entry = self._entries.get(key)
        return entry.find(message_id) if entry else None

    def has_more(self, key) -> bool:
        entry = self._entries.get(key)
        return entry is None or entry.has_more(self.page_size)

    def total_count(self, key, fallback=None):
        entry = self._entries.get(key)
        if entry is not None and entry.total is not None:
            return entry.total
        if fallback is not None:
            return fallback
        return len(entry.messages) if entry else 0

    def is_stale(self, key) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return True
        return self.clock() - entry.fetched_at >= self.stale_after_sec

    # ── Writes ──

    def update(self, key, fn, fresh=False):
        """Swap the entry for `fn(entry)`; a missing entry is left missing."""
        current = self._entries.get(key)
        if current is None:
            return None
        updated = fn(current)
        if fresh:
            updated = replace(updated, fetched_at=self.clock())
        self._entries[key] = updated
        return updated

    def _touch(self, key):
        if key is not None:
            self._last_used[key] = self.clock()

    def _store_page(self, key, position, page):
        if position == 0:
            self._entries[key] = CacheEntry(key=key, pages=(page,), fetched_at=self.clock())
            return True
        current = self._entries.get(key)
        if current is None or current.next_position != position:
            logger.debug("discarding page at %s for %s; cache moved on", position, key)
            return False
        self._entries[key] = replace(current, pages=current.pages + (page,))
        return True

    async def _load_page(self, key, position):
        result = await self.client.query_messages(key.mailbox_id, position, self.page_size, key.sort_property)
        summaries = []
        if result.ids:
            summaries = await self.client.get_messages(result.ids, EMAIL_SUMMARY_PROPERTIES)
        by_id = {summary.id: summary for summary in summaries}
        return CachedPage(
            ids=tuple(result.ids),
            messages=tuple(by_id[message_id] for message_id in result.ids if message_id in by_id),
            position=result.position,
            total=result.total,
            query_state=result.query_state,
        )

    async def fetch_page(self, key, position):
        page = await self._load_page(key, position)
        self._store_page(key, position, page)
        return page

    async def fetch_next_page(self, key):
        """Fetch the page after the loaded tail; one in flight per key."""
        task = self._next_page_tasks.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(self._fetch_next(key))
            self._next_page_tasks[key] = task
        return await task

    async def _fetch_next(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return await self.fetch_page(key, 0)
        if not entry.has_more(self.page_size):
            return None
        return await self.fetch_page(key, entry.next_position)

    async def switch_folder(self, key):
        """Activate a folder; returns True when a fetch cascade ran."""
        previous = self.active_key
        self._touch(previous)
        self.active_key = key
        self._touch(key)

        entry = self._entries.get(key)
        if entry is not None and entry.messages:
            return False

        if self._cascade is None or self._cascade.done() or self._cascade_key != key:
            self._cancel_cascade()
            self._cascade_key = key
            self._cascade = asyncio.ensure_future(self._run_cascade(key))

        task = self._cascade
        await asyncio.wait({task})
        if task.cancelled():
            return False
        task.result()
        return True

    def _cancel_cascade(self):
        task = self._cascade
        if task is None or task.done():
            return
        task.cancel()
        try:
            self.client.cancel_all_requests()
        except Exception as exc:
            logger.debug("cancel_all_requests failed: %s", exc)

    async def _run_cascade(self, key):
        await asyncio.sleep(self.debounce_sec)
        if self.active_key != key:
            return
        await self.fetch_page(key, 0)
        for _ in range(self.prefetch_pages):
            if self.active_key != key or not self.has_more(key):
                break
            try:
                await self.fetch_next_page(key)
            except ExternalServiceError as exc:
                logger.debug("prefetch stopped for %s: %s", key, exc)
                break

    async def on_visible_range_changed(self, end_index, key=None):
        key = key or self.active_key
        if key is None:
            return False
        loaded = len(self.messages(key))
        if end_index <= loaded - self.page_size // 2 or not self.has_more(key):
            return False
        try:
            await self.fetch_next_page(key)
        except ExternalServiceError as exc:
            logger.debug("error fetching next page for %s: %s", key, exc)
            return False
        return True

    async def invalidate(self, key):
        """Refetch the active key's loaded pages and swap them in at once.

        Inactive keys are simply dropped and load again on their next switch.
        """
        entry = self._entries.get(key)
        if key != self.active_key:
            self._entries.pop(key, None)
            return None

        page_count = max(1, len(entry.pages)) if entry else 1
        pages = []
        position = 0
        for _ in range(page_count):
            page = await self._load_page(key, position)
            pages.append(page)
            if not page_has_more(page, self.page_size):
                break
            position = page.next_position

        if self.active_key != key:
            self._entries.pop(key, None)
            return None
        refreshed = CacheEntry(key=key, pages=tuple(pages), fetched_at=self.clock())
        self._entries[key] = refreshed
        return refreshed

    def collect_garbage(self):
        """Evict entries that are not active and unused for the gc window."""
        now = self.clock()
        evicted = []
        for key, last_used in list(self._last_used.items()):
            if key == self.active_key or now - last_used < self.gc_after_sec:
                continue
            self._entries.pop(key, None)
            self._last_used.pop(key, None)
            evicted.append(key)
        return evicted

    def close(self):
        self._cancel_cascade()
        for task in self._next_page_tasks.values():
            if not task.done():
                task.cancel()
        self._next_page_tasks.clear()


__all__ = [
    "CacheEntry",
    "CachedPage",
    "PagedMailboxCache",
    "mark_message_seen",
    "page_has_more",
    "remove_message",
]
