import pytest
from sqlalchemy import func, select

from passkey_server.core.exceptions import InvalidIdentifier, UserNotFound
from passkey_server.models.credential import Credential
from passkey_server.services.identity_resolver import derive_anonymous_username, derive_user_handle
from passkey_server.services.user_data_service import UserDataService


@pytest.fixture
def service(store):
    return UserDataService(store)

@pytest.fixture
async def bob(store):
    async with store.transaction():
        user = await store.add_user("bob", derive_user_handle("bob"))
        await store.add_credential(Credential(user_id=user.id, credential_id=b"bob-cred", public_key=b"pk"))
    return user

@pytest.fixture
async def anonymous(store):
    username = derive_anonymous_username(b"anon-cred")
    async with store.transaction():
        user = await store.add_user(username, b"a" * 32)
        await store.add_credential(Credential(user_id=user.id, credential_id=b"anon-cred", public_key=b"pk"))
    return user

@pytest.mark.asyncio
async def test_store_and_fetch_named_user_data(service, bob):
    # Arrange
    payload = {"ciphertext": "b64...", "iv": "abc", "salt": "xyz"}

    # Act
    stored = await service.store_user_data("bob", encrypted_data=payload, email="bob@example.com")
    fetched = await service.fetch_user_data("bob")

    # Assert
    assert stored["success"] is True
    assert stored["has_encrypted_data"] is True
    assert fetched["email"] == "bob@example.com"
    assert fetched["encrypted_data"] == payload

@pytest.mark.asyncio
async def test_partial_update_keeps_existing_fields(service, bob):
    await service.store_user_data("bob", encrypted_data={"v": 1}, email="bob@example.com")

    await service.store_user_data("bob", email="new@example.com")

    fetched = await service.fetch_user_data("bob")
    assert fetched["email"] == "new@example.com"
    assert fetched["encrypted_data"] == {"v": 1}

@pytest.mark.asyncio
async def test_anonymous_user_data_needs_credential(service, anonymous):
    # Act
    await service.store_user_data(anonymous.username, encrypted_data="opaque", credential_id=b"anon-cred")
    fetched = await service.fetch_user_data(anonymous.username, credential_id=b"anon-cred")

    # Assert
    assert fetched["encrypted_data"] == "opaque"
    with pytest.raises(InvalidIdentifier):
        await service.fetch_user_data(anonymous.username)

@pytest.mark.asyncio
async def test_fetch_unknown_user(service):
    with pytest.raises(UserNotFound):
        await service.fetch_user_data("nobody")

@pytest.mark.asyncio
async def test_seed_backup_merges_into_encrypted_data(service, bob):
    # Arrange
    await service.store_user_data("bob", encrypted_data={"vault": "sealed"})

    # Act
    result = await service.store_seed_backup("bob", "encrypted-seed", {"kdf": "argon2id", "salt": "s"})

    # Assert
    data = (await service.fetch_user_data("bob"))["encrypted_data"]
    assert result["success"] is True
    assert data["vault"] == "sealed"
    assert data["seedBackup"]["encryptedSeed"] == "encrypted-seed"
    assert data["seedBackup"]["keyDerivationParams"] == {"kdf": "argon2id", "salt": "s"}
    assert data["seedBackup"]["backupDate"] == result["backup_date"]
    assert data["seedBackup"]["version"] == 1

@pytest.mark.asyncio
async def test_seed_backup_for_unknown_user(service):
    with pytest.raises(UserNotFound):
        await service.store_seed_backup("nobody", "seed")

@pytest.mark.asyncio
async def test_delete_user_removes_credentials(service, bob, db_session):
    # Act
    await service.delete_user("bob")

    # Assert
    remaining = (await db_session.execute(select(func.count()).select_from(Credential))).scalar_one()
    assert remaining == 0
    with pytest.raises(UserNotFound):
        await service.fetch_user_data("bob")
    with pytest.raises(UserNotFound):
        await service.delete_user("bob")
