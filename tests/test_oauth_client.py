from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from flickmeter.config import Settings
from flickmeter.service.errors import NotFoundError, OAuthError
from flickmeter.service.identity import VerifiedIdentity
from flickmeter.service.oauth import OAuthClient, safe_redirect
from flickmeter.storage.memory import MemoryCache


def _settings(**overrides):
    values = {
        "oauth_google_client_id": "g-client",
        "oauth_google_client_secret": "g-secret",
        "oauth_github_client_id": "gh-client",
        "oauth_github_client_secret": "gh-secret",
        "oauth_callback_base_url": "https://app.example/api/users/auth",
    }
    values.update(overrides)
    return Settings(**values)


def _client(transport=None, **overrides):
    return OAuthClient(_settings(**overrides), MemoryCache(), transport=transport)


def _state_from(url):
    return parse_qs(urlparse(url).query)["state"][0]


async def test_start_builds_authorization_url():
    client = _client()

    url = await client.start("google", redirect="/movies/42", keep=True)

    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    assert parsed.netloc == "accounts.google.com"
    assert query["client_id"] == ["g-client"]
    assert query["redirect_uri"] == ["https://app.example/api/users/auth/google/callback"]
    assert query["response_type"] == ["code"]
    assert len(query["state"][0]) >= 43


async def test_state_carries_redirect_and_keep_once():
    client = _client()
    state = _state_from(await client.start("github", redirect="/watchlist", keep=True))

    pending = await client.consume_state("github", state)

    assert pending.redirect == "/watchlist"
    assert pending.keep is True
    with pytest.raises(OAuthError):
        await client.consume_state("github", state)


async def test_state_is_bound_to_its_provider():
    client = _client()
    state = _state_from(await client.start("github"))

    with pytest.raises(OAuthError):
        await client.consume_state("google", state)


async def test_missing_state_is_rejected():
    with pytest.raises(OAuthError):
        await _client().consume_state("google", "")


async def test_unconfigured_provider_is_not_found():
    client = _client(oauth_github_client_id=None)

    with pytest.raises(NotFoundError):
        await client.start("github")
    with pytest.raises(NotFoundError):
        await client.start("myspace")


@pytest.mark.parametrize(
    "target,expected",
    [
        (None, "/"),
        ("/movies", "/movies"),
        ("https://evil.example/steal", "/"),
        ("//evil.example", "/"),
        ("movies", "/"),
        ("/\\evil.example", "/"),
        ("/\\/evil.example", "/"),
        ("/movies\\..\\admin", "/"),
    ],
)
def test_safe_redirect(target, expected):
    assert safe_redirect(target) == expected


async def test_registered_code_short_circuits_exchange():
    client = _client()
    identity = VerifiedIdentity(email="a@x.com", display_name="octocat")
    client.register_oauth_code("github", "code-1", identity)

    assert await client.exchange("github", "code-1") == identity


def _github_transport(*, email=None, emails=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gho_token"})
        assert request.headers["Authorization"] == "Bearer gho_token"
        if request.url.path == "/user":
            return httpx.Response(
                200,
                json={"login": "octocat", "email": email, "avatar_url": "https://avatars/1"},
            )
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=emails or [])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


async def test_github_exchange_reads_profile():
    client = _client(transport=_github_transport(email="octo@x.com"))

    identity = await client.exchange("github", "code-1")

    assert identity == VerifiedIdentity(
        email="octo@x.com", display_name="octocat", avatar_url="https://avatars/1"
    )


async def test_github_private_email_falls_back_to_primary_verified():
    emails = [
        {"email": "old@x.com", "primary": False, "verified": True},
        {"email": "main@x.com", "primary": True, "verified": True},
    ]
    client = _client(transport=_github_transport(email=None, emails=emails))

    identity = await client.exchange("github", "code-1")

    assert identity.email == "main@x.com"
    assert identity.display_name == "octocat"


async def test_exchange_without_any_email_fails():
    client = _client(transport=_github_transport(email=None, emails=[]))
    with pytest.raises(OAuthError):
        await client.exchange("github", "code-1")


async def test_rejected_code_is_oauth_error():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(400, json={"error": "invalid_grant"})
    )
    with pytest.raises(OAuthError):
        await _client(transport=transport).exchange("google", "bad-code")


async def test_google_exchange_uses_name_and_picture():
    def handler(request):
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "ya29"})
        return httpx.Response(
            200,
            json={"email": "g@x.com", "name": "Jane Doe", "picture": "https://pic/1"},
        )

    client = _client(transport=httpx.MockTransport(handler))

    identity = await client.exchange("google", "code-1")

    assert identity.email == "g@x.com"
    # canonicalization happens later, at login
    assert identity.display_name == "Jane Doe"
    assert identity.avatar_url == "https://pic/1"
