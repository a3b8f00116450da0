import logging

from stormbox.domain.helpers import display_name, slugify_folder_name, sort_property_for
from stormbox.domain.models import FolderKey

logger = logging.getLogger(__name__)


class MailboxDirectory:
    """Folder list plus the role/name mapping used for navigation."""

    def __init__(self, client):
        self.client = client
        self.mailboxes = []

    async def load(self):
        self.mailboxes = list(await self.client.list_mailboxes())
        logger.debug("loaded %d mailboxes", len(self.mailboxes))
        return self.mailboxes

    def get(self, mailbox_id):
        for mailbox in self.mailboxes:
            if mailbox.id == mailbox_id:
                return mailbox
        return None

    def find_by_role(self, role):
        target = (role or "").lower()
        for mailbox in self.mailboxes:
            if (mailbox.role or "").lower() == target:
                return mailbox
        return None

    @staticmethod
    def display_name(mailbox):
        return display_name(mailbox)

    @staticmethod
    def url_name(mailbox):
        return slugify_folder_name(display_name(mailbox))

    def resolve_by_display_key(self, key):
        """Map a folder slug back to its mailbox; first match wins."""
        if not key:
            return None
        target = key.lower()
        for mailbox in self.mailboxes:
            if self.url_name(mailbox) == target:
                return mailbox
        return None

    def folder_key(self, mailbox_id):
        return FolderKey(mailbox_id, sort_property_for(self.get(mailbox_id)))

    def decrement_unread(self, mailbox_id):
        mailbox = self.get(mailbox_id)
        if mailbox is not None and mailbox.unread_count > 0:
            mailbox.unread_count -= 1

    def decrement_total(self, mailbox_id):
        mailbox = self.get(mailbox_id)
        if mailbox is not None and mailbox.total_count > 0:
            mailbox.total_count -= 1

    def set_total(self, mailbox_id, total):
        mailbox = self.get(mailbox_id)
        if mailbox is not None and total is not None:
            mailbox.total_count = max(0, int(total))


__all__ = ["MailboxDirectory"]
