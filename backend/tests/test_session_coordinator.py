"""Tests for registration/login OTP flows, token rotation and session revocation."""

from pathlib import Path

import pytest
from sqlalchemy import delete

from conftest import create_user
from vidtube.core.auth import create_access_token
from vidtube.core.errors import (
    ConflictError,
    DeliveryError,
    NotFoundError,
    OtpExpiredError,
    OtpMismatchError,
    OtpNotFoundError,
    UnauthorizedError,
    UploadFailedError,
    ValidationError,
)
from vidtube.models.user import User
from vidtube.schemas.upload import RegistrationFiles
from vidtube.schemas.user import RegistrationFields
from vidtube.services.credential_store import CredentialStore

BOB = RegistrationFields(full_name="Bob", email="Bob@X.com", username="Bob", password="pw")


def _files(make_temp_upload, avatar: bool = True, cover: bool = True) -> RegistrationFiles:
    return RegistrationFiles(
        avatar=make_temp_upload("avatar.png") if avatar else None,
        cover_image=make_temp_upload("cover.png") if cover else None,
    )


def _assert_discarded(files: RegistrationFiles) -> None:
    for upload in (files.avatar, files.cover_image):
        if upload is not None:
            assert not Path(upload.path).exists()


# ── registration ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_register_then_verify_creates_user(coordinator, mailer, storage, otp_store, make_temp_upload):
    files = _files(make_temp_upload)
    ack = await coordinator.request_registration(BOB, files)
    assert ack.email == "bob@x.com"
    assert ack.expires_in == 600
    # Nothing is persisted before verification
    assert await coordinator.credentials.find_by_username_or_email(username="bob") is None

    user = await coordinator.verify_registration("bob@x.com", mailer.last_code("bob@x.com"))
    assert user.username == "bob"
    assert user.email == "bob@x.com"
    assert user.full_name == "Bob"
    assert user.avatar.startswith("https://cdn.test/avatars/")
    assert user.cover_image.startswith("https://cdn.test/covers/")
    assert not hasattr(user, "password_hash")
    assert [c for c, _ in storage.uploaded] == ["avatars", "covers"]
    _assert_discarded(files)
    assert await otp_store.get("bob@x.com") is None

    stored = await coordinator.credentials.get_by_id(user.id)
    assert stored.password_hash != "pw"
    assert CredentialStore.check_password(stored, "pw")
    assert stored.refresh_token_hash is None


@pytest.mark.asyncio
async def test_register_with_wrong_code_creates_nothing(coordinator, mailer, make_temp_upload):
    await coordinator.request_registration(BOB, _files(make_temp_upload))
    code = mailer.last_code("bob@x.com")
    wrong = str(100000 + (int(code) - 100000 + 1) % 900000)
    with pytest.raises(OtpMismatchError):
        await coordinator.verify_registration("bob@x.com", wrong)
    assert await coordinator.credentials.find_by_username_or_email(email="bob@x.com") is None


@pytest.mark.asyncio
async def test_register_missing_avatar(coordinator, otp_store, mailer, make_temp_upload):
    files = _files(make_temp_upload, avatar=False)
    with pytest.raises(ValidationError) as exc_info:
        await coordinator.request_registration(BOB, files)
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Avatar file is required"
    _assert_discarded(files)
    assert await otp_store.get("bob@x.com") is None
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_register_blank_field(coordinator, make_temp_upload):
    files = _files(make_temp_upload)
    fields = RegistrationFields(full_name="  ", email="bob@x.com", username="bob", password="pw")
    with pytest.raises(ValidationError) as exc_info:
        await coordinator.request_registration(fields, files)
    assert exc_info.value.message == "All fields are required"
    _assert_discarded(files)


@pytest.mark.asyncio
async def test_register_duplicate_email_conflicts_and_cleans_up(coordinator, session, otp_store, make_temp_upload):
    await create_user(session, username="someone", email="bob@x.com")
    files = _files(make_temp_upload)
    with pytest.raises(ConflictError) as exc_info:
        await coordinator.request_registration(BOB, files)
    assert exc_info.value.status_code == 409
    _assert_discarded(files)
    assert await otp_store.get("bob@x.com") is None


@pytest.mark.asyncio
async def test_register_duplicate_username_is_case_insensitive(coordinator, session, make_temp_upload):
    await create_user(session, username="bob", email="other@x.com")
    with pytest.raises(ConflictError):
        await coordinator.request_registration(BOB, _files(make_temp_upload))


@pytest.mark.asyncio
async def test_register_delivery_failure_cleans_up(coordinator, mailer, otp_store, make_temp_upload):
    mailer.fail = True
    files = _files(make_temp_upload)
    with pytest.raises(DeliveryError):
        await coordinator.request_registration(BOB, files)
    _assert_discarded(files)
    assert await otp_store.get("bob@x.com") is None


@pytest.mark.asyncio
async def test_verify_registration_avatar_upload_failure(coordinator, mailer, storage, make_temp_upload):
    files = _files(make_temp_upload)
    await coordinator.request_registration(BOB, files)
    storage.fail_categories.add("avatars")
    with pytest.raises(UploadFailedError) as exc_info:
        await coordinator.verify_registration("bob@x.com", mailer.last_code("bob@x.com"))
    assert exc_info.value.status_code == 400
    _assert_discarded(files)
    assert await coordinator.credentials.find_by_username_or_email(username="bob") is None


@pytest.mark.asyncio
async def test_verify_registration_cover_failure_is_not_fatal(coordinator, mailer, storage, make_temp_upload):
    files = _files(make_temp_upload)
    await coordinator.request_registration(BOB, files)
    storage.fail_categories.add("covers")
    user = await coordinator.verify_registration("bob@x.com", mailer.last_code("bob@x.com"))
    assert user.cover_image == ""
    _assert_discarded(files)


@pytest.mark.asyncio
async def test_verify_registration_without_cover(coordinator, mailer, make_temp_upload):
    await coordinator.request_registration(BOB, _files(make_temp_upload, cover=False))
    user = await coordinator.verify_registration("bob@x.com", mailer.last_code("bob@x.com"))
    assert user.cover_image == ""


@pytest.mark.asyncio
async def test_verify_registration_conflict_after_request(coordinator, session, mailer, make_temp_upload):
    files = _files(make_temp_upload)
    await coordinator.request_registration(BOB, files)
    await create_user(session, username="bob", email="bob2@x.com")
    with pytest.raises(ConflictError):
        await coordinator.verify_registration("bob@x.com", mailer.last_code("bob@x.com"))
    _assert_discarded(files)


@pytest.mark.asyncio
async def test_registration_otp_expires(coordinator, mailer, clock, make_temp_upload):
    files = _files(make_temp_upload)
    await coordinator.request_registration(BOB, files)
    code = mailer.last_code("bob@x.com")
    clock.advance(minutes=11)
    with pytest.raises(OtpExpiredError):
        await coordinator.verify_registration("bob@x.com", code)
    _assert_discarded(files)
    with pytest.raises(OtpNotFoundError):
        await coordinator.verify_registration("bob@x.com", code)


@pytest.mark.asyncio
async def test_verify_registration_requires_email_and_code(coordinator):
    with pytest.raises(ValidationError):
        await coordinator.verify_registration("bob@x.com", "")


# ── login ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_login_flow_issues_tokens_once(coordinator, session, mailer):
    alice = await create_user(session)
    ack = await coordinator.request_login("alice@x.com", "", "correctpw")
    assert ack.email == "alice@x.com"
    code = mailer.last_code("alice@x.com")

    result = await coordinator.verify_login("alice@x.com", code)
    assert result.user.id == alice.id
    assert result.user.username == "alice"
    assert result.access_token and result.refresh_token
    claims = coordinator.tokens.verify_access_token(result.access_token)
    assert claims["sub"] == str(alice.id)

    with pytest.raises(OtpNotFoundError) as exc_info:
        await coordinator.verify_login("alice@x.com", code)
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_login_by_username_sends_code_to_email(coordinator, session, mailer):
    await create_user(session)
    ack = await coordinator.request_login(None, "ALICE", "correctpw")
    assert ack.email == "alice@x.com"
    assert mailer.sent[-1][0] == "alice@x.com"


@pytest.mark.asyncio
async def test_login_requires_identifier(coordinator):
    with pytest.raises(ValidationError):
        await coordinator.request_login("", "  ", "pw")


@pytest.mark.asyncio
async def test_login_unknown_user(coordinator, db):
    with pytest.raises(NotFoundError) as exc_info:
        await coordinator.request_login("ghost@x.com", None, "pw")
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_login_wrong_password(coordinator, session, mailer, otp_store):
    await create_user(session)
    with pytest.raises(UnauthorizedError) as exc_info:
        await coordinator.request_login("alice@x.com", None, "wrong")
    assert exc_info.value.status_code == 401
    assert mailer.sent == []
    assert await otp_store.get("alice@x.com") is None


@pytest.mark.asyncio
async def test_registration_code_cannot_open_session(coordinator, mailer, otp_store, make_temp_upload):
    await coordinator.request_registration(BOB, _files(make_temp_upload))
    code = mailer.last_code("bob@x.com")
    with pytest.raises(OtpNotFoundError):
        await coordinator.verify_login("bob@x.com", code)
    assert await otp_store.get("bob@x.com") is not None


# ── session ──────────────────────────────────────────────────────────────────


async def _log_in(coordinator, mailer, email: str = "alice@x.com", password: str = "correctpw"):
    await coordinator.request_login(email, None, password)
    return await coordinator.verify_login(email, mailer.last_code(email))


@pytest.mark.asyncio
async def test_refresh_rotates_and_detects_reuse(coordinator, session, mailer):
    await create_user(session)
    first = await _log_in(coordinator, mailer)

    rotated = await coordinator.refresh(first.refresh_token)
    assert rotated.refresh_token != first.refresh_token

    with pytest.raises(UnauthorizedError) as exc_info:
        await coordinator.refresh(first.refresh_token)
    assert exc_info.value.message == "Refresh token is expired or used"

    # The rotated token is still the live one
    again = await coordinator.refresh(rotated.refresh_token)
    assert again.refresh_token != rotated.refresh_token


@pytest.mark.asyncio
async def test_second_login_invalidates_first_session(coordinator, session, mailer):
    await create_user(session)
    first = await _log_in(coordinator, mailer)
    second = await _log_in(coordinator, mailer)
    with pytest.raises(UnauthorizedError):
        await coordinator.refresh(first.refresh_token)
    assert (await coordinator.refresh(second.refresh_token)).access_token


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(coordinator, session, mailer):
    alice = await create_user(session)
    result = await _log_in(coordinator, mailer)
    await coordinator.logout(alice.id)
    stored = await coordinator.credentials.get_by_id(alice.id)
    assert stored.refresh_token_hash is None
    with pytest.raises(UnauthorizedError):
        await coordinator.refresh(result.refresh_token)


@pytest.mark.asyncio
async def test_refresh_rejects_missing_and_invalid_tokens(coordinator, session):
    alice = await create_user(session)
    with pytest.raises(UnauthorizedError) as exc_info:
        await coordinator.refresh(None)
    assert exc_info.value.message == "Unauthorized request"
    with pytest.raises(UnauthorizedError):
        await coordinator.refresh("garbage")
    access = create_access_token(alice.id, alice.email, alice.username, alice.full_name)
    with pytest.raises(UnauthorizedError) as exc_info:
        await coordinator.refresh(access)
    assert exc_info.value.message == "Invalid refresh token"


@pytest.mark.asyncio
async def test_refresh_for_deleted_user(coordinator, session, mailer):
    alice = await create_user(session)
    result = await _log_in(coordinator, mailer)
    await session.execute(delete(User).where(User.id == alice.id))
    with pytest.raises(UnauthorizedError) as exc_info:
        await coordinator.refresh(result.refresh_token)
    assert exc_info.value.message == "Invalid refresh token"


@pytest.mark.asyncio
async def test_change_password(coordinator, session, mailer):
    alice = await create_user(session)
    with pytest.raises(ValidationError) as exc_info:
        await coordinator.change_password(alice.id, "wrong", "newpw")
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Invalid old password"

    await coordinator.change_password(alice.id, "correctpw", "newpw")
    with pytest.raises(UnauthorizedError):
        await coordinator.request_login("alice@x.com", None, "correctpw")
    result = await _log_in(coordinator, mailer, password="newpw")
    assert result.user.full_name == "Alice Liddell"


@pytest.mark.asyncio
async def test_change_password_requires_new_password(coordinator, session):
    alice = await create_user(session)
    with pytest.raises(ValidationError):
        await coordinator.change_password(alice.id, "correctpw", "")
