"""Integration kind catalogue and logical kind groups.

A filter on a logical kind (``mail``, ``facebook``) matches every raw kind in
its group. ``expand_kind`` is the single place that expansion happens; the
list filter and the count aggregation both go through it so their results
always agree.
"""

from __future__ import annotations

KIND_CHOICES: dict[str, str] = {
    "messenger": "Web messenger",
    "lead": "Pop ups",
    "facebook-messenger": "Facebook messenger",
    "facebook-post": "Facebook post",
    "gmail": "Gmail",
    "nylas-gmail": "Gmail",
    "nylas-imap": "Imap",
    "nylas-office365": "Office 365",
    "nylas-outlook": "Outlook",
    "nylas-exchange": "Exchange",
    "nylas-yahoo": "Yahoo",
    "callpro": "Call pro",
    "twitter-dm": "Twitter direct message",
    "chatfuel": "Chatfuel",
    "whatsapp": "WhatsApp",
}

KIND_GROUPS: dict[str, frozenset[str]] = {
    "mail": frozenset(
        {
            "gmail",
            "nylas-gmail",
            "nylas-imap",
            "nylas-office365",
            "nylas-outlook",
            "nylas-exchange",
            "nylas-yahoo",
        }
    ),
    "facebook": frozenset({"facebook-messenger", "facebook-post"}),
}


def expand_kind(kind: str) -> frozenset[str]:
    normalized = kind.strip()
    if normalized in KIND_GROUPS:
        return KIND_GROUPS[normalized]
    return frozenset({normalized})


def kind_display_name(kind: str) -> str:
    return KIND_CHOICES.get(kind, kind)
