"""Per-session mail context: one instance per connected account.

Consumers receive this object explicitly instead of reaching into shared
module state; the protocol client is injected at construction.
"""

import logging
from functools import wraps

from stormbox.constants import DELTA_POLL_INTERVAL_SEC, VIEW_MODES
from stormbox.domain.helpers import matches_filter
from stormbox.domain.reply import build_reply
from stormbox.errors import AuthError, ExternalServiceError, TransportError
from stormbox.infra.blob_store import LocalBlobStore
from stormbox.paths import DOWNLOAD_DIR
from stormbox.services.delta_sync import DeltaSyncEngine, collect_new_unread
from stormbox.services.detail_loader import DetailLoader
from stormbox.services.mailbox_cache import PagedMailboxCache
from stormbox.services.mailbox_directory import MailboxDirectory
from stormbox.services.mutations import OptimisticMutationCoordinator

logger = logging.getLogger(__name__)


def requires_connection(default=None):
    """Turn a coroutine method into a no-op returning `default` while disconnected."""

    def decorator(fn):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            if not self.connected:
                logger.debug("%s skipped: not connected", fn.__name__)
                return default
            return await fn(self, *args, **kwargs)

        return wrapper

    return decorator


class MailSession:
    def __init__(self, client, config=None, blob_store=None, cache=None):
        self.client = client
        self.config = config
        self.directory = MailboxDirectory(client)
        self.cache = cache or PagedMailboxCache(client)
        self.blob_store = blob_store or LocalBlobStore()
        self.details = DetailLoader(client, self.blob_store)
        self.sync = DeltaSyncEngine(
            client,
            self.cache,
            self.directory,
            poll_interval_sec=self._config_value("poll_interval_sec", DELTA_POLL_INTERVAL_SEC),
            on_applied=self._on_delta_applied,
        )
        self.mutations = OptimisticMutationCoordinator(
            client, self.cache, self.directory, report_error=self._set_error
        )

        self.connected = False
        self.initialized = False
        self.status = "Not connected."
        self.error = ""
        self.current_mailbox_id = None
        self.selected_id = None
        self.view_mode = self._config_value("view_mode", "all")
        self.filter_text = ""
        self.known_ids = set()

    def _config_value(self, key, default):
        if self.config is None:
            return default
        value = self.config.get(key)
        return default if value is None else value

    def _set_error(self, text):
        self.error = text

    # ── State views ──

    @property
    def current_mailbox(self):
        return self.directory.get(self.current_mailbox_id)

    @property
    def current_key(self):
        if not self.current_mailbox_id:
            return None
        return self.directory.folder_key(self.current_mailbox_id)

    @property
    def messages(self):
        key = self.current_key
        return self.cache.messages(key) if key else ()

    @property
    def visible_messages(self):
        items = self.messages
        if self.view_mode == "unread":
            items = tuple(message for message in items if not message.seen)
        if self.filter_text:
            items = tuple(message for message in items if matches_filter(message, self.filter_text))
        return items

    @property
    def total_count(self):
        key = self.current_key
        if key is None:
            return 0
        mailbox = self.current_mailbox
        return self.cache.total_count(key, fallback=mailbox.total_count if mailbox else None)

    @property
    def selected_message(self):
        key = self.current_key
        if key is None or not self.selected_id:
            return None
        return self.cache.find(key, self.selected_id)

    # ── Connection ──

    async def connect(self):
        self.error = ""
        self.status = "Connecting…"
        try:
            await self.client.fetch_session()
        except AuthError as exc:
            self.status = "Failed."
            self.error = str(exc)
            return False
        except TransportError as exc:
            self.status = "Failed."
            self.error = f"{exc}\nLikely network issue."
            return False
        self.connected = True
        self.status = "Connected."
        return True

    @requires_connection(default=False)
    async def initialize(self):
        if self.initialized:
            return True
        try:
            await self.directory.load()
        except ExternalServiceError as exc:
            logger.info("mailbox list unavailable: %s", exc)
            self.error = f"Loading folders failed: {exc}"
            return False
        self.sync.start(lambda: self.current_key, lambda: self.connected)
        self.initialized = True
        return True

    # ── Folders ──

    @requires_connection(default=False)
    async def switch_folder(self, mailbox_id):
        if mailbox_id == self.current_mailbox_id and self.messages:
            return False
        self.current_mailbox_id = mailbox_id
        self.selected_id = None
        self.details.clear()
        self.cache.collect_garbage()

        key = self.current_key
        try:
            fetched = await self.cache.switch_folder(key)
        except ExternalServiceError as exc:
            logger.info("loading %s failed: %s", key, exc)
            self.error = f"Loading messages failed: {exc}"
            return False
        self.known_ids.update(message.id for message in self.cache.messages(key))
        return fetched

    @requires_connection(default=False)
    async def switch_folder_by_name(self, folder_name):
        mailbox = self.directory.resolve_by_display_key(folder_name)
        if mailbox is None:
            return False
        await self.switch_folder(mailbox.id)
        return True

    @requires_connection(default=False)
    async def on_visible_range_changed(self, end_index):
        key = self.current_key
        if key is None:
            return False
        return await self.cache.on_visible_range_changed(end_index, key)

    def set_view(self, mode):
        if mode in VIEW_MODES:
            self.view_mode = mode

    # ── Sync ──

    @requires_connection()
    async def refresh_current(self):
        key = self.current_key
        if key is None:
            return None
        return await self.sync.refresh(key)

    @requires_connection()
    async def on_window_focus(self):
        key = self.current_key
        if key is None:
            return None
        return await self.sync.refresh(key)

    def _on_delta_applied(self, key, added, removed):
        for message_id in removed:
            self.known_ids.discard(message_id)
        new_unread = collect_new_unread(added, self.known_ids)
        if key != self.current_key:
            return
        if new_unread:
            self.status = f"{len(new_unread)} new unread message(s)"
        else:
            self.status = "Connected. Sync up to date."

    # ── Selection ──

    @requires_connection()
    async def select_message(self, message_id):
        self.selected_id = message_id
        key = self.current_key
        summary = self.cache.find(key, message_id) if key else None
        if summary is None:
            self.clear_detail()
            return None

        detail = await self.details.load(summary, key.sort_property)
        if not summary.seen:
            await self.mutations.mark_seen(key, message_id)
        return detail

    def clear_detail(self):
        self.details.clear()

    def back_to_list(self):
        self.selected_id = None
        self.clear_detail()

    # ── Actions ──

    def _on_removed(self, message_id):
        if self.selected_id == message_id:
            self.selected_id = None
            self.clear_detail()

    @requires_connection(default=False)
    async def delete_current(self):
        key = self.current_key
        if key is None or not self.selected_id:
            return False
        return await self.mutations.delete(key, self.selected_id, on_removed=self._on_removed)

    @requires_connection()
    async def reply_to_current(self):
        summary = self.selected_message
        if summary is None:
            return None

        detail = self.details.detail
        if detail is not None and detail.message_id == summary.id and (detail.html or detail.text):
            quoted_html = detail.html or detail.text or summary.preview
            quoted_text = detail.text or summary.preview
        else:
            try:
                body = await self.client.get_message_detail(summary.id)
                quoted_html = body.html or body.text or summary.preview
                quoted_text = body.text or summary.preview
            except ExternalServiceError as exc:
                logger.debug("failed to fetch body for reply, using preview: %s", exc)
                quoted_html = quoted_text = summary.preview
        return build_reply(summary, quoted_html or "", quoted_text or "")

    @requires_connection()
    async def download(self, attachment):
        target_dir = self._config_value("download_dir", DOWNLOAD_DIR)
        try:
            return await self.client.download_attachment(
                attachment.blob_id, attachment.name, attachment.type, target_dir
            )
        except (ExternalServiceError, OSError) as exc:
            self.error = f"Download failed: {exc}"
            return None

    def close(self):
        self.sync.stop()
        self.cache.close()
        self.details.clear()
        self.blob_store.close()
        self.client.close()
        self.connected = False
        self.status = "Not connected."


__all__ = ["MailSession", "requires_connection"]
