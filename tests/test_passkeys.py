import asyncio
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select, update
from webauthn.helpers import bytes_to_base64url

from cuddly_auth.core.errors import AlreadyExists, NotFound, PasskeyAuthenticationFailed, VerificationFailed
from cuddly_auth.db.session import Database
from cuddly_auth.models.authenticator import Authenticator
from cuddly_auth.models.user import User
from cuddly_auth.services import passkeys as passkeys_service

CREDENTIAL_ID = b"credential-one"


def _credential(credential_id: bytes = CREDENTIAL_ID, transports=("internal", "hybrid")) -> dict:
    encoded = bytes_to_base64url(credential_id)
    return {
        "id": encoded,
        "rawId": encoded,
        "type": "public-key",
        "response": {"clientDataJSON": "e30", "transports": list(transports)},
    }


@pytest.fixture
def fake_attestation(monkeypatch):
    calls = []

    def fake_verify_registration_response(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(credential_id=CREDENTIAL_ID, credential_public_key=b"public-key", sign_count=0)

    monkeypatch.setattr(passkeys_service, "verify_registration_response", fake_verify_registration_response)
    return calls


def _fake_assertion(monkeypatch, new_sign_count: int):
    calls = []

    def fake_verify_authentication_response(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(new_sign_count=new_sign_count, credential_id=CREDENTIAL_ID)

    monkeypatch.setattr(passkeys_service, "verify_authentication_response", fake_verify_authentication_response)
    return calls


async def _create_user(database: Database, email: str = "alice@example.com") -> User:
    async with database.session() as session:
        user = User(email=email, name="Alice", hashed_password=None)
        session.add(user)
        await session.commit()
        return user


async def _seed_authenticator(database: Database, user: User, counter: int) -> None:
    async with database.session() as session:
        session.add(
            Authenticator(
                user_id=user.id,
                credential_id=CREDENTIAL_ID,
                credential_public_key=b"public-key",
                counter=counter,
                transports=["internal"],
            )
        )
        await session.commit()


async def _stored_counter(database: Database) -> int:
    async with database.session() as session:
        result = await session.execute(select(Authenticator.counter).where(Authenticator.credential_id == CREDENTIAL_ID))
        return result.scalar_one()


def test_counter_policy() -> None:
    assert passkeys_service.counter_advances(0, 0)
    assert passkeys_service.counter_advances(4, 5)
    assert not passkeys_service.counter_advances(5, 5)
    assert not passkeys_service.counter_advances(5, 0)
    assert not passkeys_service.counter_advances(5, 3)


def test_registration_options_for_unknown_user(database: Database) -> None:
    async def run() -> None:
        async with database.session() as session:
            with pytest.raises(NotFound):
                await passkeys_service.generate_registration_options_for_user(session, uuid.uuid4())

    asyncio.run(run())


def test_registration_stores_authenticator_and_excludes_it_next_time(database: Database, fake_attestation) -> None:
    async def run() -> None:
        user = await _create_user(database)
        async with database.session() as session:
            options, challenge = await passkeys_service.generate_registration_options_for_user(session, user.id)
        assert options["challenge"] == challenge
        assert options["rp"]["name"] == "Cuddly Nuxt App"
        assert options["rp"]["id"] == "localhost"
        assert options["user"]["name"] == "alice@example.com"
        assert options["user"]["displayName"] == "Alice"
        assert options["attestation"] == "none"
        assert options["authenticatorSelection"]["authenticatorAttachment"] == "platform"
        assert options["authenticatorSelection"]["residentKey"] == "preferred"
        assert options["authenticatorSelection"]["userVerification"] == "preferred"
        assert options.get("excludeCredentials", []) == []

        async with database.session() as session:
            authenticator = await passkeys_service.register_authenticator(
                session, user_id=user.id, credential=_credential(), expected_challenge=challenge
            )
        assert authenticator.user_id == user.id
        assert authenticator.credential_id == CREDENTIAL_ID
        assert authenticator.counter == 0
        assert authenticator.transports == ["internal", "hybrid"]
        assert fake_attestation[0]["expected_rp_id"] == "localhost"
        assert "http://localhost:3000" in fake_attestation[0]["expected_origin"]

        async with database.session() as session:
            options, _ = await passkeys_service.generate_registration_options_for_user(session, user.id)
        assert [c["id"] for c in options["excludeCredentials"]] == [bytes_to_base64url(CREDENTIAL_ID)]

    asyncio.run(run())


def test_registration_challenge_cannot_be_reused(database: Database, fake_attestation) -> None:
    async def run() -> None:
        user = await _create_user(database)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_registration_options_for_user(session, user.id)
        async with database.session() as session:
            await passkeys_service.register_authenticator(
                session, user_id=user.id, credential=_credential(), expected_challenge=challenge
            )
        async with database.session() as session:
            with pytest.raises(VerificationFailed):
                await passkeys_service.register_authenticator(
                    session, user_id=user.id, credential=_credential(), expected_challenge=challenge
                )

    asyncio.run(run())


def test_duplicate_credential_is_rejected(database: Database, fake_attestation) -> None:
    async def run() -> None:
        user = await _create_user(database)
        for attempt in range(2):
            async with database.session() as session:
                _, challenge = await passkeys_service.generate_registration_options_for_user(session, user.id)
            async with database.session() as session:
                if attempt == 0:
                    await passkeys_service.register_authenticator(
                        session, user_id=user.id, credential=_credential(), expected_challenge=challenge
                    )
                else:
                    with pytest.raises(AlreadyExists):
                        await passkeys_service.register_authenticator(
                            session, user_id=user.id, credential=_credential(), expected_challenge=challenge
                        )

    asyncio.run(run())


def test_failed_attestation_is_verification_failure(database: Database, monkeypatch) -> None:
    def reject(**kwargs):
        raise ValueError("bad attestation")

    monkeypatch.setattr(passkeys_service, "verify_registration_response", reject)

    async def run() -> None:
        user = await _create_user(database)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_registration_options_for_user(session, user.id)
            with pytest.raises(VerificationFailed):
                await passkeys_service.register_authenticator(
                    session, user_id=user.id, credential=_credential(), expected_challenge=challenge
                )
            result = await session.execute(select(Authenticator))
            assert result.scalars().all() == []

    asyncio.run(run())


def test_authentication_options_allow_list(database: Database) -> None:
    async def run() -> None:
        user = await _create_user(database)
        async with database.session() as session:
            options, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        assert options["challenge"] == challenge
        assert "allowCredentials" not in options

        async with database.session() as session:
            options, _ = await passkeys_service.generate_authentication_options_for_email(
                session, "alice@example.com"
            )
        assert "allowCredentials" not in options

        await _seed_authenticator(database, user, counter=0)
        async with database.session() as session:
            options, _ = await passkeys_service.generate_authentication_options_for_email(
                session, "alice@example.com"
            )
        assert [c["id"] for c in options["allowCredentials"]] == [bytes_to_base64url(CREDENTIAL_ID)]
        assert options["allowCredentials"][0]["transports"] == ["internal"]

        async with database.session() as session:
            options, _ = await passkeys_service.generate_authentication_options_for_email(
                session, "nobody@example.com"
            )
        assert "allowCredentials" not in options

    asyncio.run(run())


def test_authentication_advances_counter(database: Database, monkeypatch) -> None:
    calls = _fake_assertion(monkeypatch, new_sign_count=6)

    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=5)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            owner = await passkeys_service.verify_authentication(
                session, credential=_credential(), expected_challenge=challenge
            )
        assert owner.id == user.id
        assert owner.email == "alice@example.com"
        assert calls[0]["credential_current_sign_count"] == 5
        assert calls[0]["credential_public_key"] == b"public-key"
        assert await _stored_counter(database) == 6

    asyncio.run(run())


@pytest.mark.parametrize("reported", [5, 3, 0])
def test_counter_regression_fails_without_mutation(database: Database, monkeypatch, reported: int) -> None:
    _fake_assertion(monkeypatch, new_sign_count=reported)

    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=5)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            with pytest.raises(PasskeyAuthenticationFailed):
                await passkeys_service.verify_authentication(
                    session, credential=_credential(), expected_challenge=challenge
                )
        assert await _stored_counter(database) == 5

    asyncio.run(run())


def test_authenticators_without_counter_stay_at_zero(database: Database, monkeypatch) -> None:
    _fake_assertion(monkeypatch, new_sign_count=0)

    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=0)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            owner = await passkeys_service.verify_authentication(
                session, credential=_credential(), expected_challenge=challenge
            )
        assert owner.id == user.id
        assert await _stored_counter(database) == 0

    asyncio.run(run())


def test_unknown_credential_and_replay_fail_generically(database: Database, monkeypatch) -> None:
    _fake_assertion(monkeypatch, new_sign_count=1)

    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=0)

        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            with pytest.raises(PasskeyAuthenticationFailed) as unknown:
                await passkeys_service.verify_authentication(
                    session, credential=_credential(b"someone-else"), expected_challenge=challenge
                )

        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            await passkeys_service.verify_authentication(
                session, credential=_credential(), expected_challenge=challenge
            )
        async with database.session() as session:
            with pytest.raises(PasskeyAuthenticationFailed) as replay:
                await passkeys_service.verify_authentication(
                    session, credential=_credential(), expected_challenge=challenge
                )

        assert unknown.value.status_code == replay.value.status_code == 401
        assert unknown.value.detail == replay.value.detail == "Passkey verification failed"

    asyncio.run(run())


def test_challenge_bound_to_other_user_is_rejected(database: Database, monkeypatch) -> None:
    _fake_assertion(monkeypatch, new_sign_count=1)

    async def run() -> None:
        alice = await _create_user(database)
        bob = await _create_user(database, email="bob@example.com")
        await _seed_authenticator(database, alice, counter=0)
        async with database.session() as session:
            session.add(
                Authenticator(
                    user_id=bob.id,
                    credential_id=b"bob-credential",
                    credential_public_key=b"bob-key",
                    counter=0,
                    transports=[],
                )
            )
            await session.commit()
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(
                session, "bob@example.com"
            )
        async with database.session() as session:
            with pytest.raises(PasskeyAuthenticationFailed):
                await passkeys_service.verify_authentication(
                    session, credential=_credential(), expected_challenge=challenge
                )

    asyncio.run(run())


def test_deleting_user_removes_authenticators(database: Database) -> None:
    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=0)
        async with database.session() as session:
            stored = await session.get(User, user.id)
            assert len(stored.authenticators) == 1
            await session.delete(stored)
            await session.commit()
            result = await session.execute(select(Authenticator))
            assert result.scalars().all() == []

    asyncio.run(run())


def test_registration_stores_counter_reported_by_attestation(database: Database, monkeypatch) -> None:
    def attested_with_counter(**kwargs):
        return SimpleNamespace(credential_id=CREDENTIAL_ID, credential_public_key=b"public-key", sign_count=9)

    monkeypatch.setattr(passkeys_service, "verify_registration_response", attested_with_counter)

    async def run() -> None:
        user = await _create_user(database)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_registration_options_for_user(session, user.id)
        async with database.session() as session:
            authenticator = await passkeys_service.register_authenticator(
                session, user_id=user.id, credential=_credential(), expected_challenge=challenge
            )
        assert authenticator.counter == 9
        assert await _stored_counter(database) == 9

    asyncio.run(run())


def test_counter_advanced_concurrently_fails_without_mutation(database: Database, monkeypatch) -> None:
    _fake_assertion(monkeypatch, new_sign_count=6)
    load_authenticator = passkeys_service._load_authenticator

    async def load_then_race(session, credential_id):
        authenticator = await load_authenticator(session, credential_id)
        # Another request replaying a later assertion wins the write.
        async with database.session() as other:
            await other.execute(
                update(Authenticator).where(Authenticator.credential_id == credential_id).values(counter=7)
            )
            await other.commit()
        return authenticator

    monkeypatch.setattr(passkeys_service, "_load_authenticator", load_then_race)

    async def run() -> None:
        user = await _create_user(database)
        await _seed_authenticator(database, user, counter=5)
        async with database.session() as session:
            _, challenge = await passkeys_service.generate_authentication_options_for_email(session, None)
        async with database.session() as session:
            with pytest.raises(PasskeyAuthenticationFailed):
                await passkeys_service.verify_authentication(
                    session, credential=_credential(), expected_challenge=challenge
                )
        assert await _stored_counter(database) == 7

    asyncio.run(run())
