import hashlib
from dataclasses import dataclass

from hybrid_categorizer.core.configuration import CacheConfig
from hybrid_categorizer.errors import StoreUnavailable
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.storage.kv import KeyValueStore

logger = get_logger(__name__)

KEY_PREFIX = "categorization:merchant:"
DEFAULT_AI_SUGGESTED_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_USER_CORRECTED_TTL_SECONDS = 90 * 24 * 60 * 60


@dataclass(frozen=True)
class CacheLookup:
    category: str | None
    available: bool = True

    @property
    def hit(self) -> bool:
        return self.category is not None


def cache_key(normalized_text: str) -> str:
    digest = hashlib.sha256(normalized_text.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class CategoryCache:
    """
    Content-addressed category cache.
    Store failures never propagate: reads degrade to a miss, writes to a no-op.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ai_suggested_ttl_seconds: int = DEFAULT_AI_SUGGESTED_TTL_SECONDS,
        user_corrected_ttl_seconds: int = DEFAULT_USER_CORRECTED_TTL_SECONDS,
    ):
        self.store = store
        self.ai_suggested_ttl_seconds = ai_suggested_ttl_seconds
        self.user_corrected_ttl_seconds = user_corrected_ttl_seconds

    @classmethod
    def from_config(cls, store: KeyValueStore, config: CacheConfig) -> "CategoryCache":
        return cls(
            store,
            ai_suggested_ttl_seconds=config.ai_suggested_ttl_seconds,
            user_corrected_ttl_seconds=config.user_corrected_ttl_seconds,
        )

    def ttl_for(self, is_user_correction: bool) -> int:
        return self.user_corrected_ttl_seconds if is_user_correction else self.ai_suggested_ttl_seconds

    def lookup(self, normalized_text: str) -> CacheLookup:
        key = cache_key(normalized_text)
        try:
            category = self.store.get(key)
        except StoreUnavailable as exc:
            logger.warning("[CACHE] Read skipped for '%s': %s", normalized_text[:50], exc)
            return CacheLookup(category=None, available=False)

        if category:
            logger.debug("[CACHE] HIT '%s' -> %s", normalized_text[:50], category)
            return CacheLookup(category=category)
        logger.debug("[CACHE] MISS '%s'", normalized_text[:50])
        return CacheLookup(category=None)

    def get(self, normalized_text: str) -> str | None:
        return self.lookup(normalized_text).category

    def set(self, normalized_text: str, category: str, is_user_correction: bool = False) -> bool:
        """Upsert the mapping; returns False when the store rejected the write."""
        key = cache_key(normalized_text)
        ttl = self.ttl_for(is_user_correction)
        try:
            self.store.setex(key, ttl, category)
        except StoreUnavailable as exc:
            logger.warning("[CACHE] Write skipped for '%s': %s", normalized_text[:50], exc)
            return False

        logger.debug(
            "[CACHE] Stored '%s' -> %s (ttl=%ss, user_corrected=%s)",
            normalized_text[:50],
            category,
            ttl,
            is_user_correction,
        )
        return True
