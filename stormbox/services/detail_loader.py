import logging

from stormbox.constants import SORT_RECEIVED
from stormbox.domain.helpers import build_detail_header
from stormbox.domain.models import MessageDetail
from stormbox.errors import ExternalServiceError
from stormbox.services.inline_images import InlineImageResolver

logger = logging.getLogger(__name__)


class DetailLoader:
    """Holds the body of the one selected message and its inline-image handles."""

    def __init__(self, client, blob_store):
        self.client = client
        self.blob_store = blob_store
        self.detail = None
        self._resolver = None

    @property
    def message_id(self):
        return self.detail.message_id if self.detail else None

    async def load(self, summary, sort_property=SORT_RECEIVED):
        """Load `summary`'s body; returns None when a newer selection superseded it."""
        self.clear()
        resolver = InlineImageResolver(self.client, self.blob_store)
        self._resolver = resolver
        detail = MessageDetail(message_id=summary.id, header=build_detail_header(summary, sort_property))
        self.detail = detail

        try:
            body = await self.client.get_message_detail(summary.id)
            html = ""
            if body.html:
                cid_types = {attachment.cid: attachment.type for attachment in body.attachments if attachment.cid}
                html = await resolver.resolve(body.html, body.cid_map, cid_types)
        except ExternalServiceError as exc:
            logger.debug("failed to load email detail %s: %s", summary.id, exc)
            if self._resolver is not resolver:
                resolver.release()
                return None
            detail.text = summary.preview or ""
            return detail

        if self._resolver is not resolver:
            resolver.release()
            return None

        detail.attachments = [attachment for attachment in body.attachments if not attachment.is_inline]
        detail.text = body.text or ""
        detail.html = html
        detail.handles = resolver.handles
        if not detail.html and not detail.text:
            detail.text = summary.preview or ""
        return detail

    def clear(self):
        if self._resolver is not None:
            self._resolver.release()
        self._resolver = None
        if self.detail is not None:
            self.detail.handles = {}
        self.detail = None


__all__ = ["DetailLoader"]
