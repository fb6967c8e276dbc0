from __future__ import annotations

import re

from orbit.services.errors import ReservedNameException

SLUG_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_HYPHEN_RUN_RE = re.compile(r"-+")

MAX_SLUG_LEN = 63
RESERVED_SLUGS = frozenset({"launchpad", "orbit"})


def slugify(value: str) -> str:
    lowered = value.lower()
    replaced = _NON_ALNUM_RE.sub("-", lowered)
    collapsed = _HYPHEN_RUN_RE.sub("-", replaced)
    return collapsed.strip("-")[:MAX_SLUG_LEN].strip("-")


def is_valid_slug(value: str) -> bool:
    """Slugs double as directory names, DNS labels and repository names."""
    return bool(SLUG_RE.fullmatch(value))


def check_slug(value: str) -> str:
    if not is_valid_slug(value):
        raise ValueError(f"Invalid project slug {value!r}: use lowercase letters, digits and hyphens")
    return value


def validate_slug(value: str) -> str:
    check_slug(value)
    if value in RESERVED_SLUGS:
        raise ReservedNameException(f'The name "{value}" is reserved for the system.')
    return value
