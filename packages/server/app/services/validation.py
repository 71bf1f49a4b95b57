"""
Input normalization shared by both services.

Everything here runs before any store call, so a malformed input can never
leave a partial write behind.
"""

from __future__ import annotations

import random
import re
import string
import unicodedata
import uuid
from typing import Any, Optional
from urllib.parse import urljoin, urlparse

from app.core.errors import ServiceError
from app.stores.mapping import UNTITLED_CAPSULE_NAME
from capsules_shared.schemas.capsules import MemberRole, MembershipPolicy

NAME_LIMIT = 80
SLUG_LIMIT = 50
SLUG_MAX_ATTEMPTS = 4

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_SLUG_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def normalize_id(value: Any) -> Optional[str]:
    """Trim an identifier. UUIDs are case-folded to their canonical form."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if _UUID_RE.match(text):
        return str(uuid.UUID(text))
    return text


def require_actor(value: Any, error_cls: type[ServiceError]) -> str:
    actor_id = normalize_id(value)
    if actor_id is None:
        raise error_cls.forbidden("You need to be signed in to do that.")
    return actor_id


def require_id(value: Any, error_cls: type[ServiceError], label: str) -> str:
    normalized = normalize_id(value)
    if normalized is None:
        raise error_cls.invalid(f"A {label} is required.")
    return normalized


def normalize_message(value: Any, limit: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:limit].rstrip()


def parse_member_role(value: Any, error_cls: type[ServiceError]) -> MemberRole:
    if isinstance(value, MemberRole):
        return value
    text = str(value).strip().lower() if value is not None else ""
    try:
        return MemberRole(text)
    except ValueError:
        raise error_cls.invalid("Choose a valid member role.") from None


def parse_policy(value: Any, error_cls: type[ServiceError]) -> MembershipPolicy:
    if isinstance(value, MembershipPolicy):
        return value
    text = str(value).strip().lower() if value is not None else ""
    try:
        return MembershipPolicy(text)
    except ValueError:
        raise error_cls.invalid("Choose a valid membership policy.") from None


# ---------------------------------------------------------------------------
# Capsule names and slugs
# ---------------------------------------------------------------------------

def normalize_capsule_name(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        return UNTITLED_CAPSULE_NAME
    return text[:NAME_LIMIT].strip()


def slugify(value: str) -> str:
    ascii_text = (
        unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii").lower()
    )
    return _SLUG_SEPARATOR_RE.sub("-", ascii_text).strip("-")


def build_slug_candidate(source: str, attempt: int, rng: random.Random | None = None) -> Optional[str]:
    """Slug for the given attempt: the bare slug first, then random suffixes."""
    base = slugify(source)[:SLUG_LIMIT].rstrip("-")
    if not base:
        return None
    if attempt == 0:
        return base
    rng = rng or random
    if attempt == 1:
        suffix = "".join(rng.choices(_SUFFIX_ALPHABET, k=4))
    else:
        suffix = f"{attempt}-" + "".join(rng.choices(_SUFFIX_ALPHABET, k=3))
    # trim the base, never the suffix
    base = base[: SLUG_LIMIT - len(suffix) - 1].rstrip("-")
    return f"{base}-{suffix}"


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

def resolve_media_url(value: Optional[str], origin: Optional[str]) -> Optional[str]:
    """Resolve a relative media path against the configured origin."""
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    if urlparse(text).scheme or not origin:
        return text
    return urljoin(origin.rstrip("/") + "/", text.lstrip("/"))
