"""
One-time passcode challenges for registration and login.

One challenge per e-mail: issuing replaces whatever was there, so only the most
recent code verifies. Verification consumes the challenge at most once; the
store backends provide an atomic compare-and-delete keyed on the challenge id.
Expired challenges are evicted lazily on verify and by a periodic sweep, and
any temp uploads they carry are released with them.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from vidtube.config import settings
from vidtube.core.errors import OtpExpiredError, OtpMismatchError, OtpNotFoundError
from vidtube.schemas.otp import ChallengePayload, OtpChallenge
from vidtube.services.mailer import Mailer, render_otp_email

logger = logging.getLogger(__name__)

OTP_MIN = 100_000
OTP_MAX = 999_999
REDIS_KEY_PREFIX = "otp:challenge:"

# Deletes KEYS[1] only if it still holds the challenge whose id is ARGV[1]; returns the removed value.
_COMPARE_AND_DELETE = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
if cjson.decode(raw)['id'] == ARGV[1] then
    redis.call('DEL', KEYS[1])
    return raw
end
return false
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_otp() -> str:
    """Uniformly random 6-digit code in 100000..999999."""
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


class ChallengeStore(Protocol):
    async def get(self, email: str) -> OtpChallenge | None: ...

    async def set(self, challenge: OtpChallenge) -> OtpChallenge | None:
        """Store under challenge.email, returning the challenge it replaced."""
        ...

    async def delete(self, email: str, challenge_id: str | None = None) -> OtpChallenge | None:
        """Remove and return the entry; with challenge_id, only if it is still that challenge."""
        ...

    async def sweep(self, now: datetime) -> list[OtpChallenge]: ...

    async def close(self) -> None: ...


class InMemoryChallengeStore:
    """Single-process store. The lock makes compare-and-delete atomic across tasks."""

    def __init__(self):
        self._items: dict[str, OtpChallenge] = {}
        self._lock = asyncio.Lock()

    async def get(self, email: str) -> OtpChallenge | None:
        return self._items.get(email)

    async def set(self, challenge: OtpChallenge) -> OtpChallenge | None:
        async with self._lock:
            previous = self._items.get(challenge.email)
            self._items[challenge.email] = challenge
            return previous

    async def delete(self, email: str, challenge_id: str | None = None) -> OtpChallenge | None:
        async with self._lock:
            current = self._items.get(email)
            if current is None:
                return None
            if challenge_id is not None and current.id != challenge_id:
                return None
            del self._items[email]
            return current

    async def sweep(self, now: datetime) -> list[OtpChallenge]:
        async with self._lock:
            expired = [c for c in self._items.values() if c.is_expired(now)]
            for challenge in expired:
                del self._items[challenge.email]
            return expired

    async def close(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class RedisChallengeStore:
    """Multi-process store. Keys outlive the code by a grace period so the sweep can release uploads."""

    def __init__(self, client, grace_seconds: int = 3600):
        self._redis = client
        self._grace_seconds = grace_seconds

    @staticmethod
    def _key(email: str) -> str:
        return f"{REDIS_KEY_PREFIX}{email}"

    @staticmethod
    def _parse(raw: str | bytes | None) -> OtpChallenge | None:
        if not raw:
            return None
        return OtpChallenge.model_validate_json(raw)

    async def get(self, email: str) -> OtpChallenge | None:
        return self._parse(await self._redis.get(self._key(email)))

    async def set(self, challenge: OtpChallenge) -> OtpChallenge | None:
        ttl = int((challenge.expires_at - _utcnow()).total_seconds()) + self._grace_seconds
        previous = await self._redis.set(
            self._key(challenge.email),
            challenge.model_dump_json(),
            ex=max(1, ttl),
            get=True,
        )
        return self._parse(previous)

    async def delete(self, email: str, challenge_id: str | None = None) -> OtpChallenge | None:
        key = self._key(email)
        if challenge_id is None:
            return self._parse(await self._redis.getdel(key))
        return self._parse(await self._redis.eval(_COMPARE_AND_DELETE, 1, key, challenge_id))

    async def sweep(self, now: datetime) -> list[OtpChallenge]:
        expired: list[OtpChallenge] = []
        async for key in self._redis.scan_iter(match=f"{REDIS_KEY_PREFIX}*"):
            challenge = self._parse(await self._redis.get(key))
            if challenge is None or not challenge.is_expired(now):
                continue
            removed = await self.delete(challenge.email, challenge.id)
            if removed is not None:
                expired.append(removed)
        return expired

    async def close(self) -> None:
        await self._redis.aclose()


class OtpChallengeService:
    def __init__(
        self,
        store: ChallengeStore,
        mailer: Mailer,
        ttl_minutes: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.mailer = mailer
        self.ttl = timedelta(minutes=ttl_minutes if ttl_minutes is not None else settings.otp_expire_minutes)
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    async def issue(self, email: str, payload: ChallengePayload) -> str:
        """Store a fresh challenge for email and send its code. Returns the code."""
        code = generate_otp()
        challenge = OtpChallenge(
            id=secrets.token_hex(16),
            email=email,
            code=code,
            expires_at=self._clock() + self.ttl,
            payload=payload,
        )
        previous = await self.store.set(challenge)
        if previous is not None:
            logger.debug("Replaced pending %s challenge for %s", previous.payload.kind, email)
            previous.payload.discard_uploads()

        subject, html_body = render_otp_email(code, payload.kind, int(self.ttl.total_seconds() // 60))
        try:
            await self.mailer.send(email, subject, html_body)
        except Exception:
            await self.store.delete(email, challenge.id)
            raise
        logger.info("Issued %s OTP for %s", payload.kind, email)
        return code

    async def verify(self, email: str, code: str, kind: str | None = None) -> ChallengePayload:
        """Consume the challenge for email if code matches. Single use.

        With kind, a pending challenge of another kind is reported as not found
        and left in place.
        """
        challenge = await self.store.get(email)
        if challenge is None or (kind is not None and challenge.payload.kind != kind):
            raise OtpNotFoundError()

        if challenge.is_expired(self._clock()):
            removed = await self.store.delete(email, challenge.id)
            if removed is not None:
                removed.payload.discard_uploads()
            logger.info("Expired %s OTP presented for %s", challenge.payload.kind, email)
            raise OtpExpiredError()

        submitted = (code or "").strip().encode("utf-8")
        if not hmac.compare_digest(challenge.code.encode("utf-8"), submitted):
            raise OtpMismatchError()

        consumed = await self.store.delete(email, challenge.id)
        if consumed is None:
            # A concurrent verify (or a re-issue) got there first
            raise OtpNotFoundError()
        return consumed.payload

    async def sweep_expired(self) -> int:
        expired = await self.store.sweep(self._clock())
        for challenge in expired:
            challenge.payload.discard_uploads()
        if expired:
            logger.info("OTP sweep evicted %d expired challenge(s)", len(expired))
        return len(expired)


_store: ChallengeStore | None = None


def build_challenge_store() -> ChallengeStore:
    if settings.otp_store_backend == "redis":
        from redis.asyncio import from_url

        client = from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=settings.external_call_timeout_seconds,
            socket_connect_timeout=settings.external_call_timeout_seconds,
        )
        return RedisChallengeStore(client, grace_seconds=settings.otp_retention_grace_seconds)
    return InMemoryChallengeStore()


def init_otp_store() -> ChallengeStore:
    """Create the process-wide store. Call from app lifespan startup."""
    global _store
    if _store is None:
        _store = build_challenge_store()
        logger.info("OTP challenge store: %s", type(_store).__name__)
    return _store


def get_otp_store() -> ChallengeStore:
    """FastAPI dependency returning the process-wide store."""
    if _store is None:
        raise RuntimeError("OTP store not initialized; ensure app lifespan has run init_otp_store().")
    return _store


async def close_otp_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
