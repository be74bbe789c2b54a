"""
Short-lived data on top of the cache facade: OTPs, password reset tokens,
fixed-window rate limits, namespaced temp data and sessions.

Key layout:
- temp:otp:{purpose}:{identifier}    OTP record (index hash: otp:index)
- temp:reset:{user_id}:{token}       reset token record
- rate:{key}:{window_start}          rate-limit counter
- temp:{namespace}:{key}             arbitrary temp data
- session:{session_id}               session record
"""

import asyncio
import time
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel

from kvbroker.cache import CacheFacade
from kvbroker.config import CacheTTL

logger = structlog.get_logger(__name__)

OTP_INDEX_KEY = "otp:index"
OTP_MAX_ATTEMPTS = 3
OTP_VERIFIED_RETENTION = 120  # seconds a verified OTP stays readable
RESET_TOKEN_TTL = 3600
TEMP_DATA_TTL = 300
BULK_TEMP_DATA_TTL = 600
CLEANUP_MIN_TTL = 60  # keys with less remaining life are dropped by cleanup

CLEANUP_PATTERNS = ("temp:otp:*", "temp:reset:*", "session:*")


class TempReason(str, Enum):
    """Why a verification or validation was rejected."""

    OTP_NOT_FOUND = "OTP_NOT_FOUND"
    MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_MISMATCH = "OTP_MISMATCH"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"


class OTPVerification(BaseModel):
    valid: bool
    reason: Optional[TempReason] = None
    remaining_attempts: Optional[int] = None
    locked: bool = False
    verified_at: Optional[int] = None
    identifier: Optional[str] = None


class TokenValidation(BaseModel):
    valid: bool
    reason: Optional[TempReason] = None
    data: Optional[dict[str, Any]] = None


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    current: int
    reset: int  # epoch ms when the window closes
    retry_after: int  # seconds; 0 when allowed


class TempStorage:
    """
    Temp-data service used by authentication and session code.

    Args:
        cache: Cache facade
        cleanup_interval: Seconds between background cleanups
        clock: Returns epoch seconds (injectable for tests)
    """

    def __init__(
        self,
        cache: CacheFacade,
        cleanup_interval: float = 1800.0,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._cleanup_task: Optional[asyncio.Task] = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _remaining_seconds(self, expires_at_ms: int) -> int:
        return (expires_at_ms - self._now_ms()) // 1000

    # --- OTP ---

    @staticmethod
    def otp_key(identifier: str, purpose: str) -> str:
        return f"temp:otp:{purpose}:{identifier}"

    async def store_otp(
        self,
        identifier: str,
        otp: str,
        purpose: str = "login",
        ttl: int = CacheTTL.OTP,
    ) -> Optional[dict[str, Any]]:
        """Store an OTP; returns {key, expires_in} or None on store failure."""
        key = self.otp_key(identifier, purpose)
        now_ms = self._now_ms()
        record = {
            "otp": otp,
            "identifier": identifier,
            "purpose": purpose,
            "attempts": 0,
            "max_attempts": OTP_MAX_ATTEMPTS,
            "created_at": now_ms,
            "expires_at": now_ms + ttl * 1000,
            "verified": False,
        }
        if not await self.cache.set(key, record, ttl):
            return None
        await self.cache.hset(OTP_INDEX_KEY, identifier, key, ttl)
        return {"key": key, "expires_in": ttl}

    async def verify_otp(self, identifier: str, otp: str, purpose: str = "login") -> OTPVerification:
        key = self.otp_key(identifier, purpose)
        record = await self.cache.get(key)
        if not isinstance(record, dict):
            return OTPVerification(valid=False, reason=TempReason.OTP_NOT_FOUND)

        if record["attempts"] >= record["max_attempts"]:
            return OTPVerification(valid=False, reason=TempReason.MAX_ATTEMPTS_EXCEEDED, locked=True)

        if self._now_ms() > record["expires_at"]:
            await self.cache.delete(key)
            return OTPVerification(valid=False, reason=TempReason.OTP_EXPIRED)

        if record["otp"] != otp:
            record["attempts"] += 1
            remaining_ttl = self._remaining_seconds(record["expires_at"])
            if remaining_ttl > 0:
                await self.cache.set(key, record, remaining_ttl)
            remaining_attempts = record["max_attempts"] - record["attempts"]
            logger.info(
                "OTP mismatch",
                purpose=purpose,
                remaining_attempts=remaining_attempts,
            )
            return OTPVerification(
                valid=False,
                reason=TempReason.OTP_MISMATCH,
                remaining_attempts=remaining_attempts,
                locked=remaining_attempts <= 0,
            )

        record["verified"] = True
        record["verified_at"] = self._now_ms()
        await self.cache.set(key, record, OTP_VERIFIED_RETENTION)
        return OTPVerification(
            valid=True,
            verified_at=record["verified_at"],
            identifier=record["identifier"],
        )

    async def get_otp_info(self, identifier: str, purpose: str = "login") -> Optional[dict[str, Any]]:
        return await self.cache.get(self.otp_key(identifier, purpose))

    async def invalidate_otp(self, identifier: str, purpose: str = "login") -> bool:
        await self.cache.delete(self.otp_key(identifier, purpose))
        await self.cache.hdel(OTP_INDEX_KEY, identifier)
        return True

    # --- password reset tokens ---

    @staticmethod
    def reset_key(user_id: str, token: str) -> str:
        return f"temp:reset:{user_id}:{token}"

    async def store_reset_token(self, user_id: str, token: str, ttl: int = RESET_TOKEN_TTL) -> Optional[str]:
        now_ms = self._now_ms()
        record = {
            "user_id": user_id,
            "token": token,
            "created_at": now_ms,
            "expires_at": now_ms + ttl * 1000,
            "used": False,
        }
        stored = await self.cache.set(self.reset_key(user_id, token), record, ttl)
        return token if stored else None

    async def validate_reset_token(self, user_id: str, token: str) -> TokenValidation:
        key = self.reset_key(user_id, token)
        record = await self.cache.get(key)
        if not isinstance(record, dict):
            return TokenValidation(valid=False, reason=TempReason.TOKEN_NOT_FOUND)
        if record["used"]:
            return TokenValidation(valid=False, reason=TempReason.TOKEN_ALREADY_USED)
        if self._now_ms() > record["expires_at"]:
            await self.cache.delete(key)
            return TokenValidation(valid=False, reason=TempReason.TOKEN_EXPIRED)
        return TokenValidation(valid=True, data=record)

    async def mark_reset_token_used(self, user_id: str, token: str) -> bool:
        key = self.reset_key(user_id, token)
        record = await self.cache.get(key)
        if not isinstance(record, dict):
            return False
        record["used"] = True
        record["used_at"] = self._now_ms()
        remaining_ttl = self._remaining_seconds(record["expires_at"])
        if remaining_ttl > 0:
            await self.cache.set(key, record, remaining_ttl)
        return True

    # --- rate limiting ---

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Fixed-window counter. The counter key expires with its window.

        When the store is failing the counter reads 0, so requests are allowed.
        """
        now_ms = self._now_ms()
        window_start = (now_ms // 1000 // window_seconds) * window_seconds
        current = await self.cache.incr(f"rate:{key}:{window_start}", ttl=window_seconds)
        reset_ms = (window_start + window_seconds) * 1000
        allowed = current <= limit
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - current),
            current=current,
            reset=reset_ms,
            retry_after=0 if allowed else -(-(reset_ms - now_ms) // 1000),
        )

    # --- temp data ---

    async def store_temp_data(self, namespace: str, key: str, data: Any, ttl: int = TEMP_DATA_TTL) -> bool:
        return await self.cache.set(f"temp:{namespace}:{key}", data, ttl)

    async def get_temp_data(self, namespace: str, key: str) -> Any:
        return await self.cache.get(f"temp:{namespace}:{key}")

    async def delete_temp_data(self, namespace: str, key: str) -> int:
        return await self.cache.delete(f"temp:{namespace}:{key}")

    async def store_bulk_temp_data(
        self,
        namespace: str,
        items: list[dict[str, Any]],
        ttl: int = BULK_TEMP_DATA_TTL,
    ) -> int:
        """Store items keyed by their "id" field in one batch; returns items stored."""
        if not items:
            return 0
        stored = await self.cache.mset({f"temp:{namespace}:{item['id']}": item for item in items}, ttl)
        return len(items) if stored else 0

    # --- sessions ---

    async def store_session_data(self, session_id: str, data: Any, ttl: int = CacheTTL.SESSION) -> bool:
        now_ms = self._now_ms()
        record = {
            "session_id": session_id,
            "data": data,
            "created_at": now_ms,
            "last_accessed": now_ms,
            "ttl": ttl,
        }
        return await self.cache.set(f"session:{session_id}", record, ttl)

    async def get_session_data(self, session_id: str, update_access: bool = True) -> Any:
        """Return the session payload; refreshes last_accessed without extending expiry."""
        key = f"session:{session_id}"
        record = await self.cache.get(key)
        if not isinstance(record, dict):
            return None

        if update_access:
            record["last_accessed"] = self._now_ms()
            remaining_ttl = self._remaining_seconds(record["created_at"] + record["ttl"] * 1000)
            if remaining_ttl > 0:
                await self.cache.set(key, record, remaining_ttl)
        return record.get("data")

    async def delete_session(self, session_id: str) -> int:
        return await self.cache.delete(f"session:{session_id}")

    # --- maintenance ---

    async def cleanup_expired_data(self) -> int:
        """
        Delete temp keys that are gone or about to expire, then prune the OTP
        index. Keys without an expiry are left alone.
        """
        cleaned = 0
        for pattern in CLEANUP_PATTERNS:
            for key in await self.cache.keys(pattern):
                ttl = await self.cache.ttl(key)
                if ttl == -2 or 0 <= ttl < CLEANUP_MIN_TTL:
                    cleaned += await self.cache.delete(key)

        pruned = await self.cleanup_otp_index()
        logger.info("Temp data cleanup completed", removed=cleaned, otp_index_pruned=pruned)
        return cleaned

    async def cleanup_otp_index(self) -> int:
        index = await self.cache.hgetall(OTP_INDEX_KEY)
        stale = [identifier for identifier, key in index.items() if not await self.cache.exists(key)]
        if stale:
            await self.cache.hdel(OTP_INDEX_KEY, *stale)
        return len(stale)

    async def get_stats(self) -> dict[str, int]:
        patterns = {"otp": "temp:otp:*", "reset": "temp:reset:*", "sessions": "session:*"}
        stats = {name: len(await self.cache.keys(pattern)) for name, pattern in patterns.items()}
        stats["total"] = sum(stats.values())
        return stats

    def start(self) -> None:
        """Start the periodic cleanup task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        logger.info("Temp storage shut down")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.cleanup_expired_data()
            except Exception as e:
                logger.warning("Temp data cleanup failed", error=str(e))
