"""
Existing registration resolver - Single-flight prior-registration lookup.

At most one request is in flight per IdentityKey. Concurrent callers for the
same key await the same task, so rapid repeated triggers cause one network
call. A caller being cancelled does not cancel the shared lookup.

Results are tagged with whether their key is still the current one; callers
must discard non-current results. Changing the key does not abort the old
lookup, it only stops its result from being cached or applied.
"""

import asyncio
from dataclasses import dataclass

from .models import ExistingRegistrationRecord, IdentityKey
from .ports import RegistrationGateway


@dataclass(frozen=True)
class LookupResult:
    key: IdentityKey
    record: ExistingRegistrationRecord | None
    current: bool


class ExistingRegistrationResolver:
    def __init__(self, gateway: RegistrationGateway) -> None:
        self._gateway = gateway
        self._current: IdentityKey | None = None
        self._inflight: dict[IdentityKey, asyncio.Future] = {}
        self._cache: dict[IdentityKey, ExistingRegistrationRecord | None] = {}

    @property
    def current_key(self) -> IdentityKey | None:
        return self._current

    def activate(self, key: IdentityKey) -> None:
        if key != self._current:
            self._cache.clear()
            self._current = key

    def invalidate(self) -> None:
        self._current = None
        self._cache.clear()

    def prime(self, key: IdentityKey, record: ExistingRegistrationRecord | None) -> None:
        """Seed the cache with a record fetched elsewhere (token restore)."""
        if key == self._current:
            self._cache[key] = record

    def in_flight(self, key: IdentityKey) -> bool:
        return key in self._inflight

    async def resolve(self, key: IdentityKey, attendee_token: str | None = None) -> LookupResult:
        """
        Look up the prior registration for key.

        Strategy (a) uses the attendee token when one is given: TokenInvalid
        propagates. Strategy (b) uses the OTP-verified session:
        SessionExpired propagates. Failures are never cached.
        """
        if key in self._cache:
            return LookupResult(key, self._cache[key], key == self._current)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, attendee_token))
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._settle(k, done))

        record = await asyncio.shield(task)
        return LookupResult(key, record, key == self._current)

    async def _fetch(
        self, key: IdentityKey, attendee_token: str | None
    ) -> ExistingRegistrationRecord | None:
        if attendee_token:
            return await self._gateway.find_existing_with_token(key.event_id, attendee_token)
        return await self._gateway.find_existing(key.email, key.event_id)

    def _settle(self, key: IdentityKey, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled() or task.exception() is not None:
            return
        if key == self._current:
            self._cache[key] = task.result()
