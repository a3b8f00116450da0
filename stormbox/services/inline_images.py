import asyncio
import logging
from urllib.parse import unquote

from bs4 import BeautifulSoup

from stormbox.errors import ExternalServiceError

logger = logging.getLogger(__name__)


def normalize_cid_value(value):
    cid = (value or "").strip()
    if not cid:
        return ""
    cid = unquote(cid).strip()
    if cid.lower().startswith("cid:"):
        cid = cid[4:]
    cid = cid.strip("<> ").lower()
    return cid


def is_cid_reference(value):
    return isinstance(value, str) and value.strip().lower().startswith("cid:")


class InlineImageResolver:
    """Rewrites `cid:` image sources of one message detail to local blob handles.

    Each distinct cid is downloaded at most once for the resolver's lifetime;
    `release()` revokes every handle it created.
    """

    def __init__(self, client, blob_store):
        self.client = client
        self.blob_store = blob_store
        self.released = False
        self._handles = {}
        self._fetches = {}

    @property
    def handles(self):
        return dict(self._handles)

    async def resolve(self, html, cid_map, cid_types=None):
        if not html or self.released:
            return html or ""
        soup = BeautifulSoup(html, "html.parser")
        targets = [
            (tag, normalize_cid_value(tag["src"]))
            for tag in soup.find_all(src=True)
            if is_cid_reference(tag.get("src"))
        ]
        if not targets:
            return html

        lookup = {normalize_cid_value(cid): cid for cid in cid_map or {}}
        for cid in dict.fromkeys(cid for _, cid in targets):
            raw_cid = lookup.get(cid)
            if raw_cid is None:
                continue
            mime_type = (cid_types or {}).get(raw_cid) or "application/octet-stream"
            await self._ensure_handle(cid, cid_map[raw_cid], raw_cid, mime_type)

        for tag, cid in targets:
            handle = self._handles.get(cid)
            if handle is not None:
                tag["src"] = handle.url
        return str(soup)

    async def _ensure_handle(self, cid, blob_id, raw_cid, mime_type):
        handle = self._handles.get(cid)
        if handle is not None:
            return handle
        task = self._fetches.get(cid)
        if task is None:
            task = asyncio.ensure_future(self._fetch(cid, blob_id, raw_cid, mime_type))
            self._fetches[cid] = task
        return await asyncio.shield(task)

    async def _fetch(self, cid, blob_id, raw_cid, mime_type):
        try:
            data = await self.client.download_blob(blob_id, f"{raw_cid}.bin", mime_type)
        except ExternalServiceError as exc:
            logger.debug("inline image %s unavailable: %s", raw_cid, exc)
            return None
        if self.released:
            return None
        try:
            handle = self.blob_store.create(data, mime_type)
        except OSError as exc:
            logger.debug("inline image %s not stored: %s", raw_cid, exc)
            return None
        self._handles[cid] = handle
        return handle

    def release(self):
        self.released = True
        self._fetches.clear()
        for handle in self._handles.values():
            self.blob_store.release(handle)
        self._handles.clear()


__all__ = ["InlineImageResolver", "is_cid_reference", "normalize_cid_value"]
