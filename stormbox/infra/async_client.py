import asyncio


class AsyncMailClient:
    """Runs a blocking mail client on worker threads so the event loop stays free.

    Only I/O leaves the loop thread; callers apply every result on the loop,
    which keeps cache mutation single-threaded.
    """

    def __init__(self, client):
        self.client = client

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def fetch_session(self):
        return await self._run(self.client.fetch_session)

    async def list_mailboxes(self):
        return await self._run(self.client.list_mailboxes)

    async def query_messages(self, mailbox_id, position, limit, sort_property):
        return await self._run(self.client.query_messages, mailbox_id, position, limit, sort_property)

    async def get_messages(self, ids, properties=None):
        return await self._run(self.client.get_messages, list(ids), properties)

    async def query_message_changes(self, mailbox_id, since_query_state, sort_property):
        return await self._run(self.client.query_message_changes, mailbox_id, since_query_state, sort_property)

    async def get_message_detail(self, message_id):
        return await self._run(self.client.get_message_detail, message_id)

    async def set_seen_flag(self, message_id, seen=True):
        return await self._run(self.client.set_seen_flag, message_id, seen)

    async def move_or_destroy_message(self, message_id, source_mailbox_id):
        return await self._run(self.client.move_or_destroy_message, message_id, source_mailbox_id)

    async def download_blob(self, blob_id, name, mime_type="application/octet-stream"):
        return await self._run(self.client.download_blob, blob_id, name, mime_type)

    async def download_attachment(self, blob_id, name, mime_type, target_dir):
        return await self._run(self.client.download_attachment, blob_id, name, mime_type, target_dir)

    def make_download_url(self, blob_id, name, mime_type="application/octet-stream"):
        return self.client.make_download_url(blob_id, name, mime_type)

    def cancel_all_requests(self):
        self.client.cancel_all_requests()

    def close(self):
        self.client.close()


__all__ = ["AsyncMailClient"]
