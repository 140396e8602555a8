"""
Slug rules for site tree nodes.

Pure functions only: nothing here touches the database. Uniqueness checks
live in the slug validator, which applies these rules first.
"""
import re
import unicodedata
from dataclasses import dataclass
from typing import FrozenSet, List, Mapping, Optional

DEFAULT_RESERVED_SLUGS: FrozenSet[str] = frozenset({
    "api",
    "admin",
    "static",
    "_next",
    "public",
    "favicon.ico",
    "robots.txt",
    "sitemap.xml",
})
DEFAULT_SLUG_PATTERN = r"^[a-z0-9-]+$"
DEFAULT_MAX_ATTEMPTS = 100
DEFAULT_MAX_LENGTH = 255

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_INVALID_CHAR = re.compile(r"[^a-z0-9-]")


@dataclass(frozen=True)
class SlugRules:
    """Injected slug configuration: reserved words, pattern and limits."""

    reserved_slugs: FrozenSet[str] = DEFAULT_RESERVED_SLUGS
    slug_pattern: str = DEFAULT_SLUG_PATTERN
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    max_length: int = DEFAULT_MAX_LENGTH

    @classmethod
    def from_config(cls, config: Mapping) -> "SlugRules":
        reserved = config.get("SITE_TREE_RESERVED_SLUGS", DEFAULT_RESERVED_SLUGS)
        return cls(
            reserved_slugs=frozenset(slug.lower() for slug in reserved),
            slug_pattern=config.get("SITE_TREE_SLUG_PATTERN", DEFAULT_SLUG_PATTERN),
            max_attempts=int(config.get("SITE_TREE_SLUG_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
            max_length=int(config.get("SITE_TREE_SLUG_MAX_LENGTH", DEFAULT_MAX_LENGTH)),
        )

    def matches(self, slug: str) -> bool:
        return re.fullmatch(self.slug_pattern, slug) is not None

    def is_reserved(self, slug: str) -> bool:
        return bool(slug) and slug.lower() in self.reserved_slugs


def slugify(title: str, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    Convert a title into a URL-safe slug.

    "Hello World!" -> "hello-world", "Café & Bar" -> "cafe-bar".
    """
    if not title:
        return ""

    slug = unicodedata.normalize("NFKD", title.lower())
    slug = slug.encode("ascii", "ignore").decode("ascii")
    slug = _NON_ALNUM.sub("-", slug).strip("-")

    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")

    return slug


def get_slug_validation_errors(slug: str, rules: Optional[SlugRules] = None) -> List[str]:
    """Every rule the slug breaks, as human-readable messages. Empty means valid."""
    rules = rules or SlugRules()

    if not slug:
        return ["Invalid slug: cannot be empty"]

    errors: List[str] = []

    if slug != slug.lower():
        errors.append(f"Invalid slug: '{slug}' contains uppercase letters")

    if not rules.matches(slug):
        invalid = list(dict.fromkeys(_INVALID_CHAR.findall(slug.lower())))
        if invalid:
            listed = ", ".join(f'"{char}"' for char in invalid)
            errors.append(f"Invalid slug: '{slug}' contains invalid character(s) {listed}")
        elif slug == slug.lower():
            errors.append(f"Invalid slug: '{slug}' does not match pattern {rules.slug_pattern}")

    if len(slug) > rules.max_length:
        errors.append(f"Invalid slug: exceeds maximum length of {rules.max_length} characters")

    if rules.is_reserved(slug):
        errors.append(f"Invalid slug: '{slug}' is a reserved system slug")

    return errors


def is_valid_slug(slug: str, rules: Optional[SlugRules] = None) -> bool:
    return not get_slug_validation_errors(slug, rules)


def with_suffix(base_slug: str, suffix: int, max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """
    "about-us", 2 -> "about-us-2". Suffix 0 returns the base unchanged.
    The base is shortened when the suffixed slug would exceed max_length.
    """
    if suffix <= 0:
        return base_slug

    tail = f"-{suffix}"
    return f"{base_slug[:max_length - len(tail)].rstrip('-')}{tail}"

