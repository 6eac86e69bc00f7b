import pytest

from passkey_server.core.exceptions import (
    DuplicateCredential,
    DuplicateUsername,
    InvalidIdentifier,
    UserNotFound,
)
from passkey_server.models.credential import Credential
from passkey_server.services.identity_resolver import (
    CeremonyIdentity,
    IdentityMode,
    IdentityResolver,
    derive_anonymous_username,
    derive_user_handle,
    is_anonymous_username,
)


def test_anonymous_username_is_deterministic():
    assert derive_anonymous_username(b"cred-1") == derive_anonymous_username(b"cred-1")

def test_anonymous_username_differs_per_credential():
    assert derive_anonymous_username(b"cred-1") != derive_anonymous_username(b"cred-2")

def test_anonymous_username_shape():
    username = derive_anonymous_username(b"\x01" * 64)

    assert username.startswith("anon_")
    assert len(username) == len("anon_") + 16
    assert is_anonymous_username(username)
    assert "=" not in username and "/" not in username and "+" not in username

def test_anonymous_username_does_not_expose_credential_id():
    credential_id = b"plainly-visible-credential-id"

    username = derive_anonymous_username(credential_id)

    assert "plainly" not in username

def test_user_handle_is_stable_per_username():
    assert derive_user_handle("alice") == derive_user_handle("alice")
    assert derive_user_handle("alice") != derive_user_handle("bob")
    assert len(derive_user_handle("alice")) == 32

def test_identity_metadata_round_trip():
    identity = CeremonyIdentity(
        mode=IdentityMode.NAMED_NEW,
        user_handle=derive_user_handle("alice"),
        display_name="alice",
        username="alice",
    )

    assert CeremonyIdentity.from_metadata(identity.to_metadata()) == identity


@pytest.fixture
def resolver(store):
    return IdentityResolver(store)

@pytest.mark.asyncio
async def test_resolve_hint_without_username_is_anonymous(resolver):
    # Act
    first, user = await resolver.resolve_hint(None)
    second, _ = await resolver.resolve_hint("")

    # Assert
    assert user is None
    assert first.mode is IdentityMode.ANONYMOUS
    assert first.username is None
    assert first.display_name == "Anonymous User"
    assert len(first.user_handle) == 32
    assert first.user_handle != second.user_handle

@pytest.mark.asyncio
async def test_resolve_hint_for_unknown_username_is_named_new(resolver):
    identity, user = await resolver.resolve_hint("alice")

    assert user is None
    assert identity.mode is IdentityMode.NAMED_NEW
    assert identity.username == "alice"
    assert identity.user_handle == derive_user_handle("alice")

@pytest.mark.asyncio
async def test_resolve_hint_for_existing_user_reuses_handle(resolver, store):
    # Arrange
    async with store.transaction():
        existing = await store.add_user("alice", b"h" * 32)

    # Act
    identity, user = await resolver.resolve_hint("alice")

    # Assert
    assert identity.mode is IdentityMode.NAMED_EXISTING
    assert user.id == existing.id
    assert identity.user_handle == b"h" * 32

@pytest.mark.asyncio
async def test_resolve_hint_rejects_reserved_prefix(resolver):
    with pytest.raises(InvalidIdentifier):
        await resolver.resolve_hint("anon_chosenname")

@pytest.mark.asyncio
async def test_resolve_owner_creates_anonymous_user(resolver, store):
    # Arrange
    identity, _ = await resolver.resolve_hint(None)

    # Act
    async with store.transaction():
        user, created = await resolver.resolve_owner(identity, b"cred-1")

    # Assert
    assert created is True
    assert user.username == derive_anonymous_username(b"cred-1")
    assert bytes(user.user_handle) == identity.user_handle

@pytest.mark.asyncio
async def test_resolve_owner_for_registered_anonymous_credential_is_duplicate(resolver, store):
    # Arrange
    identity, _ = await resolver.resolve_hint(None)
    async with store.transaction():
        user, _ = await resolver.resolve_owner(identity, b"cred-1")
        await store.add_credential(
            Credential(user_id=user.id, credential_id=b"cred-1", public_key=b"pk", sign_count=0)
        )

    # Act / Assert
    with pytest.raises(DuplicateCredential):
        await resolver.resolve_owner(identity, b"cred-1")

@pytest.mark.asyncio
async def test_resolve_owner_reuses_named_user(resolver, store):
    async with store.transaction():
        existing = await store.add_user("alice", derive_user_handle("alice"))
    identity, _ = await resolver.resolve_hint("alice")

    user, created = await resolver.resolve_owner(identity, b"cred-2")

    assert created is False
    assert user.id == existing.id

@pytest.mark.asyncio
async def test_resolve_identifier_for_anonymous_requires_credential_id(resolver):
    with pytest.raises(InvalidIdentifier):
        await resolver.resolve_identifier(derive_anonymous_username(b"cred-1"))

@pytest.mark.asyncio
async def test_resolve_identifier_for_anonymous_checks_owner(resolver, store):
    # Arrange
    identity, _ = await resolver.resolve_hint(None)
    async with store.transaction():
        user, _ = await resolver.resolve_owner(identity, b"cred-1")
        await store.add_credential(
            Credential(user_id=user.id, credential_id=b"cred-1", public_key=b"pk", sign_count=0)
        )

    # Act
    resolved = await resolver.resolve_identifier(user.username, b"cred-1")

    # Assert
    assert resolved.id == user.id
    with pytest.raises(UserNotFound):
        await resolver.resolve_identifier(user.username, b"someone-elses-cred")
    with pytest.raises(UserNotFound):
        await resolver.resolve_identifier(derive_anonymous_username(b"cred-9"), b"cred-1")

@pytest.mark.asyncio
async def test_resolve_identifier_for_unknown_username(resolver):
    with pytest.raises(UserNotFound):
        await resolver.resolve_identifier("nobody")

@pytest.mark.asyncio
async def test_resolve_hint_for_existing_anonymous_user_adds_credential(resolver, store):
    # Arrange
    username = derive_anonymous_username(b"cred-1")
    async with store.transaction():
        existing = await store.add_user(username, b"a" * 32)

    # Act
    identity, user = await resolver.resolve_hint(username)

    # Assert
    assert identity.mode is IdentityMode.NAMED_EXISTING
    assert identity.username == username
    assert identity.user_handle == b"a" * 32
    assert user.id == existing.id

@pytest.mark.asyncio
async def test_resolve_hint_rejects_overlong_username(resolver):
    with pytest.raises(InvalidIdentifier):
        await resolver.resolve_hint("x" * 256)

@pytest.mark.asyncio
async def test_resolve_hint_accepts_longest_username(resolver):
    identity, _ = await resolver.resolve_hint("x" * 255)

    assert identity.mode is IdentityMode.NAMED_NEW

@pytest.mark.parametrize("hint", ["auth:Y2hhbGxlbmdl", "reg:token", "tab\there"])
@pytest.mark.asyncio
async def test_resolve_hint_rejects_ceremony_key_shapes(resolver, hint):
    with pytest.raises(InvalidIdentifier):
        await resolver.resolve_hint(hint)

@pytest.mark.asyncio
async def test_resolve_owner_anonymous_name_collision_is_not_merged(resolver, store, monkeypatch):
    # Arrange: force two credential ids onto the same derived name
    monkeypatch.setattr(
        "passkey_server.services.identity_resolver.derive_anonymous_username",
        lambda credential_id, prefix=None: "anon_fixedcollision",
    )
    identity, _ = await resolver.resolve_hint(None)
    async with store.transaction():
        user, _ = await resolver.resolve_owner(identity, b"cred-1")
        await store.add_credential(
            Credential(user_id=user.id, credential_id=b"cred-1", public_key=b"pk", sign_count=0)
        )

    # Act / Assert
    with pytest.raises(DuplicateUsername):
        await resolver.resolve_owner(identity, b"cred-2")
