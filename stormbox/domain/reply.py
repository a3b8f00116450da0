import html
import re
from dataclasses import dataclass

from stormbox.constants import NO_SUBJECT
from stormbox.domain.helpers import format_date
from stormbox.domain.models import join_addresses

_RE_PREFIX = re.compile(r"^re:", re.IGNORECASE)


@dataclass(frozen=True)
class ReplyDraft:
    to: str
    subject: str
    html: str
    text: str


def ensure_re_subject(subject: str) -> str:
    value = (subject or NO_SUBJECT).strip()
    return value if _RE_PREFIX.match(value) else f"Re: {value}"


def quote_text(text: str) -> str:
    return "> " + (text or "").replace("\n", "\n> ")


def build_reply(summary, quoted_html: str = "", quoted_text: str = "") -> ReplyDraft:
    """Build the reply draft for a message, quoting the supplied body."""
    who = summary.from_text or "the sender"
    when = format_date(summary.received_at or summary.sent_at)
    reply_html = (
        "<br><br>"
        f'<div style="color: #666;">On {html.escape(when)}, {html.escape(who)} wrote:</div>'
        '<blockquote style="margin: 10px 0 0 10px; padding: 0 0 0 10px; '
        f'border-left: 2px solid #ccc; color: #666;">{quoted_html}</blockquote>'
    )
    reply_text = f"\n\nOn {when}, {who} wrote:\n{quote_text(quoted_text)}"
    recipients = summary.reply_to if summary.reply_to else summary.from_
    return ReplyDraft(
        to=join_addresses(recipients),
        subject=ensure_re_subject(summary.subject),
        html=reply_html,
        text=reply_text,
    )


__all__ = ["ReplyDraft", "build_reply", "ensure_re_subject", "quote_text"]
