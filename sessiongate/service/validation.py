from __future__ import annotations

import re
import unicodedata

from sessiongate.service.errors import ValidationError

MAX_EMAIL_LENGTH = 254

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_EMAIL_TLD = re.compile(r"^[a-zA-Z]{2,63}$")

# U+200B..U+200D, U+FEFF
_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
# U+202A..U+202E, U+2066..U+2069
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip invisible spoofing characters, then apply NFKC."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Canonical form used for storage and lookups: trimmed, NFKC, lowercase.

    Raises ValidationError for anything that is not a plausible
    ``local@domain.tld`` address.
    """
    if not isinstance(value, str):
        raise ValidationError("email must be a string", detail={"field": "email"})
    normalized = normalize_unicode(value.strip()).lower()
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValidationError("email address too long", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValidationError("invalid email address", detail={"field": "email"})
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address format", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2 or not _EMAIL_TLD.match(labels[-1]):
        raise ValidationError("invalid email address format", detail={"field": "email"})
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email address format", detail={"field": "email"})
    return normalized
