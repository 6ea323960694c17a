"""Human-readable profile slugs with a random suffix."""

import re
import secrets
import string

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def random_suffix(length: int = 4) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def generate_slug(name: str, city: str = "", state: str = "") -> str:
    """
    Build a slug from name, city and state, e.g. "sunrise-care-austin-tx-k3f9".

    Empty parts are skipped; the suffix keeps slugs unique for same-named
    listings in the same town.
    """
    parts = [part for part in (name, city, state) if part]
    base = _NON_SLUG_CHARS.sub("-", " ".join(parts).lower()).strip("-")
    suffix = random_suffix()
    return f"{base}-{suffix}" if base else suffix
