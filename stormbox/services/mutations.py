import logging

from stormbox.errors import ExternalServiceError
from stormbox.services.mailbox_cache import mark_message_seen, remove_message

logger = logging.getLogger(__name__)


class OptimisticMutationCoordinator:
    """Applies seen/delete locally first, then mirrors them to the server.

    Failed remote calls are not rolled back; the folder is invalidated instead
    so the next read picks up the server's state.
    """

    def __init__(self, client, cache, directory, report_error=None):
        self.client = client
        self.cache = cache
        self.directory = directory
        self.report_error = report_error
        self._pending_deletes = set()

    def _report(self, text):
        logger.warning(text)
        if self.report_error is not None:
            self.report_error(text)

    async def _resync(self, key):
        try:
            await self.cache.invalidate(key)
        except ExternalServiceError as exc:
            logger.info("resync after failed mutation did not complete for %s: %s", key, exc)

    async def mark_seen(self, key, message_id):
        """Returns True when the message flipped from unseen to seen locally."""
        message = self.cache.find(key, message_id)
        if message is None or message.seen:
            return False

        self.cache.update(key, lambda entry: mark_message_seen(entry, message_id))
        self.directory.decrement_unread(key.mailbox_id)

        try:
            await self.client.set_seen_flag(message_id, True)
        except ExternalServiceError as exc:
            self._report(f"Mark as read failed: {exc}")
            await self._resync(key)
        return True

    async def delete(self, key, message_id, on_removed=None):
        """Remove locally, then move to trash (or destroy when already in trash)."""
        if message_id in self._pending_deletes:
            return False
        message = self.cache.find(key, message_id)
        if message is None:
            return False

        self._pending_deletes.add(message_id)
        try:
            self.cache.update(key, lambda entry: remove_message(entry, message_id))
            if not message.seen:
                self.directory.decrement_unread(key.mailbox_id)
            self.directory.decrement_total(key.mailbox_id)
            if on_removed is not None:
                on_removed(message_id)

            try:
                await self.client.move_or_destroy_message(message_id, key.mailbox_id)
            except ExternalServiceError as exc:
                self._report(f"Delete failed: {exc}")
                await self._resync(key)
                return False
            return True
        finally:
            self._pending_deletes.discard(message_id)

    def is_delete_pending(self, message_id) -> bool:
        return message_id in self._pending_deletes


__all__ = ["OptimisticMutationCoordinator"]
