from typing import Dict, List, Optional, TypedDict

from sitetree.extensions import db
from sitetree.domain.exceptions import InvalidSlugError, SlugGenerationError
from sitetree.domain.slugs import (
    SlugRules,
    get_slug_validation_errors,
    slugify,
    with_suffix,
)
from sitetree.repositories.site_node_repository import SiteNodeRepository


class SlugSuggestion(TypedDict):
    original_slug: str
    suggested_slug: str
    is_unique: bool
    validation_errors: List[str]


class SlugValidator:
    """
    Sibling-scoped slug uniqueness, checked against the database.

    All lookups go through the current session, so when called inside a
    transactional() block they see, and are serialized with, that block's
    own writes.
    """

    def __init__(self, rules: Optional[SlugRules] = None):
        self.rules = rules or SlugRules()

    @property
    def repository(self) -> SiteNodeRepository:
        return SiteNodeRepository(db.session)

    def validation_errors(self, slug: str) -> List[str]:
        return get_slug_validation_errors(slug, self.rules)

    def check_slug_uniqueness(
        self,
        slug: str,
        *,
        website_id: str,
        parent_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> bool:
        taken = self.repository.find_sibling_slugs(
            website_id, parent_id, slugs=[slug], exclude_id=exclude_id
        )
        return not taken

    def _taken_variants(self, base_slug, website_id, parent_id, exclude_id):
        return {
            slug.lower()
            for slug in self.repository.find_sibling_slugs(
                website_id, parent_id, prefix=base_slug, exclude_id=exclude_id
            )
        }

    def _is_free(self, candidate, base_slug, taken, website_id, parent_id, exclude_id):
        # Shortened candidates fall outside the prefix query and need their own lookup
        if not candidate.startswith(base_slug):
            return self.check_slug_uniqueness(
                candidate, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
            )
        return candidate.lower() not in taken

    def ensure_unique_slug(
        self,
        base_slug: str,
        *,
        website_id: str,
        parent_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Return `base_slug`, or the first free "base-N" variant of it.

        Raises:
        - InvalidSlugError if the base slug breaks the slug rules
        - SlugGenerationError when no variant up to max_attempts is free
        """
        errors = self.validation_errors(base_slug)
        if errors:
            raise InvalidSlugError(base_slug, errors)

        attempts = self.rules.max_attempts if max_attempts is None else max_attempts
        taken = self._taken_variants(base_slug, website_id, parent_id, exclude_id)

        for suffix in range(attempts + 1):
            candidate = with_suffix(base_slug, suffix, self.rules.max_length)
            if self._is_free(candidate, base_slug, taken, website_id, parent_id, exclude_id):
                return candidate

        raise SlugGenerationError(base_slug, attempts)

    def suggest_alternatives(
        self,
        slug: str,
        *,
        website_id: str,
        parent_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        limit: int = 3,
    ) -> List[str]:
        """Free "slug-N" variants to offer alongside a conflict."""
        if self.validation_errors(slug):
            return []

        taken = self._taken_variants(slug, website_id, parent_id, exclude_id)
        suggestions: List[str] = []

        for suffix in range(1, self.rules.max_attempts + 1):
            candidate = with_suffix(slug, suffix, self.rules.max_length)
            if self._is_free(candidate, slug, taken, website_id, parent_id, exclude_id):
                suggestions.append(candidate)
                if len(suggestions) >= limit:
                    break

        return suggestions

    def generate_unique_slug(
        self,
        title: str,
        *,
        website_id: str,
        parent_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> str:
        base_slug = slugify(title, self.rules.max_length)

        if not base_slug:
            raise InvalidSlugError(title, [
                "Unable to generate slug from title - title may be empty or contain only special characters"
            ])

        return self.ensure_unique_slug(
            base_slug, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
        )

    def batch_check_slug_uniqueness(
        self,
        slugs: List[str],
        *,
        website_id: str,
        parent_id: Optional[str] = None,
    ) -> Dict[str, bool]:
        """slug -> True when free, resolved with a single query."""
        existing = {
            slug.lower()
            for slug in self.repository.find_sibling_slugs(website_id, parent_id, slugs=slugs)
        }
        return {slug: slug.lower() not in existing for slug in slugs}

    def get_existing_slugs(self, *, website_id: str, parent_id: Optional[str] = None) -> List[str]:
        return self.repository.find_sibling_slugs(website_id, parent_id)

    def validate_and_suggest_slug(
        self,
        title: str,
        *,
        website_id: str,
        parent_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> SlugSuggestion:
        original_slug = slugify(title, self.rules.max_length)
        errors = self.validation_errors(original_slug)

        if errors:
            return {
                "original_slug": original_slug,
                "suggested_slug": "",
                "is_unique": False,
                "validation_errors": errors,
            }

        is_unique = self.check_slug_uniqueness(
            original_slug, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
        )
        suggested_slug = original_slug
        if not is_unique:
            suggested_slug = self.ensure_unique_slug(
                original_slug, website_id=website_id, parent_id=parent_id, exclude_id=exclude_id
            )

        return {
            "original_slug": original_slug,
            "suggested_slug": suggested_slug,
            "is_unique": is_unique,
            "validation_errors": [],
        }
