"""JID helpers.

A JID is ``<user>@<server>``. Personal chats live on ``s.whatsapp.net`` and
groups on ``g.us``; the user part of a device JID may carry a ``:<device>``
suffix.
"""

import re

USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"

_NON_DIGITS = re.compile(r"\D")


def _digits(value: str, country_code: str) -> str:
    digits = _NON_DIGITS.sub("", value)
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    return digits


def phone_to_jid(phone: str, country_code: str = "62") -> str:
    """Normalise a phone number (or pass through a JID) to a user JID."""
    if "@" in phone:
        return phone
    return f"{_digits(phone, country_code)}@{USER_SERVER}"


def to_jid(value: str, is_group: bool = False, country_code: str = "62") -> str:
    """Normalise a bare id to a user or group JID. JIDs pass through."""
    if "@" in value:
        return value
    server = GROUP_SERVER if is_group else USER_SERVER
    return f"{_digits(value, country_code)}@{server}"


def is_group_jid(jid: str) -> bool:
    return jid.endswith("@" + GROUP_SERVER)


def jid_user(jid: str) -> str:
    """Return the user part of a JID without any device suffix."""
    return jid.split("@", 1)[0].split(":", 1)[0]
