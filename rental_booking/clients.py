import logging
from typing import Optional

import httpx
from pydantic import ValidationError as PydanticValidationError
from redis import Redis
from redis.exceptions import RedisError

from . import schemas
from .config import settings
from .exceptions import ListingNotFoundError, ServiceUnavailableError

logger = logging.getLogger("booking_service")


class ListingStore:
    """
    Read-only view of the catalog service. The catalog owns every listing's
    total quantity; this service never writes it.
    """

    def __init__(self, base_url: str = None, client: httpx.Client = None, timeout: float = None):
        self.base_url = (base_url or settings.CATALOG_SERVICE_URL).rstrip("/")
        if timeout is None:
            timeout = settings.HTTP_TIMEOUT_SECONDS
        self.client = client or httpx.Client(timeout=timeout)

    def get_listing(self, listing_id: int) -> schemas.Listing:
        try:
            response = self.client.get(f"{self.base_url}/listings/{listing_id}")
        except httpx.HTTPError as e:
            logger.error(f"Catalog service unreachable while fetching listing {listing_id}: {e}")
            raise ServiceUnavailableError("Catalog service is unavailable.") from e

        if response.status_code == 404:
            raise ListingNotFoundError(f"Listing {listing_id} not found.")
        if response.status_code >= 400:
            logger.error(f"Catalog service answered {response.status_code} for listing {listing_id}.")
            raise ServiceUnavailableError("Catalog service is unavailable.")

        try:
            return schemas.Listing.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Catalog service returned a malformed listing {listing_id}: {e}")
            raise ServiceUnavailableError("Catalog service returned an invalid listing.") from e

    def close(self):
        self.client.close()


class IdentityService:
    """
    Looks up user profiles. Profiles are cached in Redis; if Redis is down
    the cache is skipped rather than failing the request.
    """

    def __init__(
            self,
            base_url: str = None,
            client: httpx.Client = None,
            redis_client: Optional[Redis] = None,
            cache_ttl: int = None,
    ):
        self.base_url = (base_url or settings.IDENTITY_SERVICE_URL).rstrip("/")
        self.client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
        self.redis_client = redis_client
        self.cache_ttl = settings.PROFILE_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl

    def get_user(self, user_id: int) -> Optional[schemas.UserProfile]:
        cache_key = f"user_profile_{user_id}"
        cached = self._cache_get(cache_key)
        if cached:
            return schemas.UserProfile.model_validate_json(cached)

        try:
            response = self.client.get(f"{self.base_url}/users/{user_id}")
        except httpx.HTTPError as e:
            logger.error(f"Identity service unreachable while fetching user {user_id}: {e}")
            raise ServiceUnavailableError("Identity service is unavailable.") from e

        if response.status_code == 404:
            logger.warning(f"Identity service does not know user {user_id}.")
            return None
        if response.status_code >= 400:
            logger.error(f"Identity service answered {response.status_code} for user {user_id}.")
            raise ServiceUnavailableError("Identity service is unavailable.")

        try:
            profile = schemas.UserProfile.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            logger.error(f"Identity service returned a malformed profile for user {user_id}: {e}")
            raise ServiceUnavailableError("Identity service returned an invalid profile.") from e

        self._cache_set(cache_key, profile.model_dump_json())
        return profile

    def _cache_get(self, key: str) -> Optional[str]:
        if self.redis_client is None:
            return None
        try:
            return self.redis_client.get(key)
        except RedisError as e:
            logger.error(f"Failed to read profile cache: {e}")
            return None

    def _cache_set(self, key: str, value: str) -> None:
        if self.redis_client is None:
            return
        try:
            self.redis_client.set(key, value, ex=self.cache_ttl)
        except RedisError as e:
            logger.error(f"Failed to write profile cache: {e}")

    def close(self):
        self.client.close()
