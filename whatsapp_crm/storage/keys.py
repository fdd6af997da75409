"""
Storage key layout.

The layout is shared with data written by earlier deployments and must not
change:

    contact:{id}             hash of contact fields
    messages:{id}            list of JSON messages, most recent first
    purchases:{id}           list of JSON purchases, most recent first
    idx:contacts             sorted set, member = id, score = lastMessageAt
    dedupe:msg               set of provider message ids already processed
    message_meta:{msg_id}    hash of attribution fields for one message
"""

import re
from typing import Any, Optional

CONTACT_INDEX = "idx:contacts"
DEDUPE_SET = "dedupe:msg"

_NON_DIGITS = re.compile(r"\D")


def normalize_id(raw: Any) -> str:
    """Strip every non-digit ("whatsapp:+54 911..." -> "54911...")."""
    if raw is None:
        return ""
    return _NON_DIGITS.sub("", str(raw))


class KeySpace:
    """Builds keys under an optional tenant prefix."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix or ""

    def contact(self, contact_id: str) -> str:
        return f"{self.prefix}contact:{contact_id}"

    def messages(self, contact_id: str) -> str:
        return f"{self.prefix}messages:{contact_id}"

    def purchases(self, contact_id: str) -> str:
        return f"{self.prefix}purchases:{contact_id}"

    def message_meta(self, message_id: str) -> str:
        return f"{self.prefix}message_meta:{message_id}"

    @property
    def contact_index(self) -> str:
        return f"{self.prefix}{CONTACT_INDEX}"

    @property
    def dedupe(self) -> str:
        return f"{self.prefix}{DEDUPE_SET}"

    def pattern(self, kind: str) -> str:
        """Glob matching every key of a kind ("contact", "messages"...)."""
        return f"{self.prefix}{kind}:*"

    def id_from_key(self, key: str, kind: str) -> Optional[str]:
        """Recover the id part of a key, None if it is not of that kind."""
        head = f"{self.prefix}{kind}:"
        if not key.startswith(head):
            return None
        return key[len(head):]
