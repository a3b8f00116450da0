APP_NAME = "Stormbox"
DEFAULT_SERVER_URL = "https://mail.stage-thundermail.com"
JMAP_SESSION_PATH = "/.well-known/jmap"
JMAP_USING = ["urn:ietf:params:jmap:core", "urn:ietf:params:jmap:mail"]
JMAP_MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"

HTTP_CONNECT_TIMEOUT_SEC = 10
HTTP_READ_TIMEOUT_SEC = 45
HTTP_GET_RETRIES = 1
HTTP_RATE_LIMIT_RETRIES = 3
HTTP_MAX_RETRY_AFTER_SEC = 30

PAGE_SIZE = 100
PREFETCH_PAGES = 3
FOLDER_SWITCH_DEBOUNCE_SEC = 0.05
DELTA_POLL_INTERVAL_SEC = 30
CACHE_STALE_AFTER_SEC = 30
CACHE_GC_AFTER_SEC = 5 * 60

SORT_RECEIVED = "receivedAt"
SORT_SENT = "sentAt"

EMAIL_SUMMARY_PROPERTIES = [
    "id",
    "threadId",
    "mailboxIds",
    "subject",
    "from",
    "to",
    "cc",
    "bcc",
    "replyTo",
    "sender",
    "receivedAt",
    "sentAt",
    "preview",
    "keywords",
    "hasAttachment",
    "size",
]
EMAIL_DETAIL_PROPERTIES = ["id", "bodyValues", "htmlBody", "textBody", "attachments"]
MAILBOX_PROPERTIES = ["id", "name", "role", "parentId", "sortOrder", "totalEmails", "unreadEmails"]

SEEN_KEYWORD = "$seen"
VIEW_MODES = ("all", "unread")
NO_SUBJECT = "(no subject)"
NO_SELECTION_SUBJECT = "(select a message)"

# (display name, roles, lower-case names); first match wins
FOLDER_DISPLAY_RULES = (
    ("Trash", ("trash",), ("trash", "deleted items")),
    ("Spam", ("junk",), ("spam", "junk")),
    ("Sent", ("sent",), ("sent", "sent items")),
    ("Drafts", ("drafts",), ("drafts",)),
    ("Archives", ("archive",), ("archive", "archives")),
    ("Inbox", ("inbox",), ("inbox",)),
)

BYTES_PER_KB = 1024
BYTES_PER_MB = 1024 * 1024
