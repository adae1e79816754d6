import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from rental_booking.clients import IdentityService, ListingStore
from rental_booking.exceptions import ListingNotFoundError, ServiceUnavailableError

from helpers import USERS


def store_answering(handler) -> ListingStore:
    return ListingStore(base_url="http://catalog/", client=httpx.Client(transport=httpx.MockTransport(handler)))


def identity_answering(handler, redis_client=None) -> IdentityService:
    return IdentityService(
        base_url="http://identity",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        redis_client=redis_client,
        cache_ttl=60,
    )


# --- ListingStore ---

def test_get_listing(catalog_client):
    listing = catalog_client.get_listing(1)

    assert listing.id == 1
    assert listing.owner_id == 50
    assert listing.total_quantity == 2
    assert listing.is_available is True


def test_get_listing_not_found(catalog_client):
    with pytest.raises(ListingNotFoundError):
        catalog_client.get_listing(404)


def test_get_listing_strips_trailing_slash():
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"id": 7, "owner_id": 1, "total_quantity": 3})

    store_answering(handler).get_listing(7)
    assert seen == ["/listings/7"]


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"detail": "boom"}),
    httpx.Response(200, text="not json"),
    httpx.Response(200, json={"id": 1, "owner_id": 50}),
    httpx.Response(200, json={"id": 1, "owner_id": 50, "total_quantity": 0}),
])
def test_get_listing_bad_upstream_answers(response):
    store = store_answering(lambda request: response)

    with pytest.raises(ServiceUnavailableError):
        store.get_listing(1)


def test_get_listing_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ServiceUnavailableError) as exc_info:
        store_answering(handler).get_listing(1)
    assert exc_info.value.status_code == 503


# --- IdentityService ---

def test_get_user_fetches_and_caches(identity_client, profile_cache):
    profile = identity_client.get_user(1)

    assert profile.username == "renter_one"
    profile_cache.get.assert_called_once_with("user_profile_1")
    key, value = profile_cache.set.call_args.args
    assert key == "user_profile_1"
    assert '"renter_one"' in value
    assert profile_cache.set.call_args.kwargs["ex"] == identity_client.cache_ttl


def test_get_user_served_from_cache(mocker):
    cache = mocker.MagicMock()
    cache.get.return_value = '{"id": 2, "username": "cached", "email": "c@example.com", "role": "renter"}'
    handler = mocker.Mock(side_effect=AssertionError("should not call the identity service"))

    profile = identity_answering(handler, redis_client=cache).get_user(2)

    assert profile.username == "cached"
    handler.assert_not_called()
    cache.set.assert_not_called()


def test_get_user_unknown_returns_none(identity_client, profile_cache):
    assert identity_client.get_user(999) is None
    profile_cache.set.assert_not_called()


def test_get_user_works_without_redis(mocker):
    cache = mocker.MagicMock()
    cache.get.side_effect = RedisConnectionError("down")
    cache.set.side_effect = RedisConnectionError("down")

    def handler(request):
        return httpx.Response(200, json=USERS[1])

    profile = identity_answering(handler, redis_client=cache).get_user(1)
    assert profile.email == "one@example.com"


def test_get_user_without_cache_client():
    profile = identity_answering(lambda request: httpx.Response(200, json=USERS[2])).get_user(2)
    assert profile.id == 2


@pytest.mark.parametrize("response", [
    httpx.Response(502),
    httpx.Response(200, json={"id": 1}),
])
def test_get_user_bad_upstream_answers(response):
    with pytest.raises(ServiceUnavailableError):
        identity_answering(lambda request: response).get_user(1)
