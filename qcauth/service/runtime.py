from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from qcauth.config import Settings, get_settings
from qcauth.logging import get_logger
from qcauth.service.audit import AuditSink
from qcauth.service.auth import AuthService
from qcauth.service.email import EmailService
from qcauth.service.passwords import PasswordManager
from qcauth.service.permissions import PermissionEvaluator
from qcauth.service.rbac import RbacService
from qcauth.service.tokens import SessionTokenIssuer
from qcauth.service.two_factor import TwoFactorService
from qcauth.storage.memory import MemoryStore
from qcauth.storage.postgres import PostgresStore
from qcauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

RATE_LIMIT_WINDOW_SECONDS = 60
# Upper bound on in-process buckets; keys are caller-chosen identifiers
LOCAL_RATE_LIMIT_MAX_KEYS = 50_000


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, cache and service instances for one application.

    Constructed explicitly and handed to the app factory; ``close()`` releases
    the store pool and the Redis client.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        key_material = self.settings.mfa_secret_key or self.settings.jwt_secret

        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore(mfa_encryption_key=key_material)
                    if self.settings.use_memory_store
                    else PostgresStore(
                        self.settings.database_url, mfa_encryption_key=key_material
                    )
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = cache if cache is not None else self._connect_cache()

        self.evaluator = PermissionEvaluator(
            admin_level=self.settings.admin_level_threshold,
            super_admin_level=self.settings.super_admin_level_threshold,
        )
        self.audit = AuditSink(self.store)
        self.passwords = PasswordManager(
            self.store, min_length=self.settings.password_min_length
        )
        self.two_factor = TwoFactorService(
            self.store,
            self.audit,
            self.evaluator,
            self.passwords,
            issuer=self.settings.totp_issuer,
            valid_window=self.settings.totp_valid_window,
            interval=self.settings.totp_interval_seconds,
        )
        self.tokens = SessionTokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_minutes=self.settings.session_ttl_minutes,
        )
        self.rbac = RbacService(self.store, self.audit, self.evaluator)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from,
            from_name=self.settings.totp_issuer,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            rbac=self.rbac,
            audit=self.audit,
            passwords=self.passwords,
            two_factor=self.two_factor,
            tokens=self.tokens,
            evaluator=self.evaluator,
            email=self.email,
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
            rehydrate_on_refresh=self.settings.rehydrate_claims_on_refresh,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        # When each bucket is back to full capacity and can be dropped
        self._local_rate_limit_full_at: Dict[str, datetime] = {}
        self.local_rate_limit_max_keys = LOCAL_RATE_LIMIT_MAX_KEYS
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            admin_level=self.evaluator.admin_level,
        )

    def _connect_cache(self) -> Optional[RedisCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return None

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket shared with Redis when available, in-process otherwise."""
        if limit <= 0:
            return (True, limit, 0) if return_remaining else True
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = RATE_LIMIT_WINDOW_SECONDS
        if self.cache:
            return await self.cache.check_rate_limit(
                key, limit, window_seconds, return_remaining=return_remaining, cost=cost
            )
        now = datetime.now(timezone.utc)
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_rate_limit_lock:
            if key not in self._local_rate_limits:
                self._prune_local_rate_limits(now)
            tokens, last_ts = self._local_rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local_rate_limits[key] = (tokens, now)
            self._local_rate_limit_full_at[key] = now + timedelta(
                seconds=(float(limit) - tokens) / refill_rate
            )
            reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    def _prune_local_rate_limits(self, now: datetime) -> None:
        """Make room for a new key. Caller holds the rate limit lock."""
        if len(self._local_rate_limits) < self.local_rate_limit_max_keys:
            return
        full_at = self._local_rate_limit_full_at
        for key in [k for k in self._local_rate_limits if full_at.get(k, now) <= now]:
            self._local_rate_limits.pop(key, None)
            full_at.pop(key, None)
        overflow = len(self._local_rate_limits) - self.local_rate_limit_max_keys + 1
        if overflow <= 0:
            return
        # Buckets closest to full lose the least state
        victims = sorted(self._local_rate_limits, key=lambda k: full_at.get(k, now))[:overflow]
        for key in victims:
            self._local_rate_limits.pop(key, None)
            full_at.pop(key, None)
        logger.warning("rate_limit_local_evicted", evicted=len(victims))

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")
