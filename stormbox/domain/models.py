from dataclasses import dataclass, field, replace

from stormbox.constants import SEEN_KEYWORD


@dataclass
class Mailbox:
    id: str
    name: str = ""
    role: str | None = None
    unread_count: int = 0
    total_count: int = 0
    parent_id: str | None = None
    sort_order: int = 0

    @classmethod
    def from_jmap(cls, payload):
        return cls(
            id=payload.get("id") or "",
            name=payload.get("name") or "",
            role=payload.get("role"),
            unread_count=int(payload.get("unreadEmails") or 0),
            total_count=int(payload.get("totalEmails") or 0),
            parent_id=payload.get("parentId"),
            sort_order=int(payload.get("sortOrder") or 0),
        )


@dataclass(frozen=True)
class FolderKey:
    mailbox_id: str
    sort_property: str


@dataclass(frozen=True)
class EmailAddress:
    name: str = ""
    email: str = ""

    def display(self) -> str:
        name = (self.name or "").strip()
        email = (self.email or "").strip()
        if not email:
            return ""
        return f"{name} <{email}>" if name else email


def _addresses(raw):
    return tuple(
        EmailAddress(name=item.get("name") or "", email=item.get("email") or "")
        for item in raw or []
        if isinstance(item, dict)
    )


def join_addresses(addresses) -> str:
    """Render an address list as `Name <email>, email`."""
    return ", ".join(filter(None, (address.display() for address in addresses or ())))


@dataclass(frozen=True)
class EmailSummary:
    id: str
    thread_id: str | None = None
    mailbox_ids: frozenset = frozenset()
    subject: str = ""
    from_: tuple = ()
    to: tuple = ()
    cc: tuple = ()
    bcc: tuple = ()
    reply_to: tuple = ()
    sender: tuple = ()
    received_at: str | None = None
    sent_at: str | None = None
    preview: str = ""
    keywords: frozenset = frozenset()
    has_attachment: bool = False
    size: int | None = None

    @classmethod
    def from_jmap(cls, payload):
        keywords = payload.get("keywords") or {}
        mailbox_ids = payload.get("mailboxIds") or {}
        return cls(
            id=payload.get("id") or "",
            thread_id=payload.get("threadId"),
            mailbox_ids=frozenset(key for key, value in mailbox_ids.items() if value),
            subject=payload.get("subject") or "",
            from_=_addresses(payload.get("from")),
            to=_addresses(payload.get("to")),
            cc=_addresses(payload.get("cc")),
            bcc=_addresses(payload.get("bcc")),
            reply_to=_addresses(payload.get("replyTo")),
            sender=_addresses(payload.get("sender")),
            received_at=payload.get("receivedAt"),
            sent_at=payload.get("sentAt"),
            preview=(payload.get("preview") or "").strip(),
            keywords=frozenset(key for key, value in keywords.items() if value),
            has_attachment=bool(payload.get("hasAttachment")),
            size=payload.get("size"),
        )

    @property
    def seen(self) -> bool:
        return SEEN_KEYWORD in self.keywords

    @property
    def from_text(self) -> str:
        return join_addresses(self.from_)

    def with_seen(self, seen=True):
        if seen:
            keywords = self.keywords | {SEEN_KEYWORD}
        else:
            keywords = self.keywords - {SEEN_KEYWORD}
        return replace(self, keywords=frozenset(keywords))


@dataclass(frozen=True)
class QueryPage:
    ids: tuple
    position: int = 0
    total: int | None = None
    query_state: str | None = None


@dataclass(frozen=True)
class QueryChanges:
    added: tuple = ()
    removed: tuple = ()
    new_query_state: str | None = None
    total: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class Attachment:
    blob_id: str
    name: str = "attachment"
    type: str = "application/octet-stream"
    size: int = 0
    cid: str | None = None
    disposition: str | None = None

    @property
    def is_inline(self) -> bool:
        return bool(self.cid) and (self.disposition or "").lower() != "attachment"


@dataclass(frozen=True)
class MessageBody:
    html: str = ""
    text: str = ""
    attachments: tuple = ()
    cid_map: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DetailHeader:
    subject: str = ""
    from_: str = ""
    to: str = ""
    cc: str = ""
    date: str = ""
    flags: str = ""
    size: str = ""
    id: str = ""
    preview: str = ""


@dataclass
class MessageDetail:
    message_id: str
    header: DetailHeader
    html: str = ""
    text: str = ""
    attachments: list = field(default_factory=list)
    handles: dict = field(default_factory=dict)


__all__ = [
    "Attachment",
    "DetailHeader",
    "EmailAddress",
    "EmailSummary",
    "FolderKey",
    "Mailbox",
    "MessageBody",
    "MessageDetail",
    "QueryChanges",
    "QueryPage",
    "join_addresses",
]
