import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from lib.error_handler import AppError
from lib.local_storage import LocalStorage
from lib.models import QuotaStatus, SubscriptionTier, UserProfile, utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_CHECKS_KEY = 'anonymousStressChecksCount'

def is_later_period(now: datetime, last_reset: datetime) -> bool:
    """True when ``now`` falls in a calendar month after ``last_reset``'s."""
    return (now.year, now.month) > (last_reset.year, last_reset.month)

class QuotaLedger(ABC):
    scope: str

    @abstractmethod
    async def status(self) -> QuotaStatus:
        ...

    @abstractmethod
    async def record_check(self) -> QuotaStatus:
        ...

    async def can_check(self) -> bool:
        return (await self.status()).can_check

class AnonymousQuotaLedger(QuotaLedger):
    """Lifetime allowance for one browser. The counter never resets."""

    scope = 'anonymous'

    def __init__(self, local_storage: LocalStorage, limit: int = 5):
        self.local_storage = local_storage
        self.limit = limit

    def checks_used(self) -> int:
        raw = self.local_storage.get_item(ANONYMOUS_CHECKS_KEY)
        if not raw:
            return 0
        try:
            return max(0, int(raw))
        except ValueError:
            logger.warning(f"Ignoring unreadable anonymous check counter: {raw!r}")
            return 0

    async def status(self) -> QuotaStatus:
        used = self.checks_used()
        return QuotaStatus(
            scope=self.scope,
            used=used,
            limit=self.limit,
            can_check=used < self.limit,
        )

    async def record_check(self) -> QuotaStatus:
        used = self.checks_used() + 1
        self.local_storage.set_item(ANONYMOUS_CHECKS_KEY, str(used))
        logger.info(f"Anonymous checks used: {used}/{self.limit}")
        return QuotaStatus(
            scope=self.scope,
            used=used,
            limit=self.limit,
            can_check=used < self.limit,
        )

class AccountQuotaLedger(QuotaLedger):
    """Monthly allowance for a signed-in account.

    The profile held here is the last known one; it is replaced after every
    successful write so repeated evaluations in a month reset at most once.
    """

    scope = 'authenticated'

    def __init__(
        self,
        profile: UserProfile,
        profile_repository,
        limit: int = 30,
        clock: Callable[[], datetime] = utcnow,
        on_profile_change: Optional[Callable[[UserProfile], None]] = None
    ):
        self.profile = profile
        self.profiles = profile_repository
        self.limit = limit
        self.clock = clock
        self.on_profile_change = on_profile_change

    def _status_for(self, profile: UserProfile, reset_error: Optional[str] = None) -> QuotaStatus:
        premium = profile.subscription_tier == SubscriptionTier.PREMIUM
        return QuotaStatus(
            scope=self.scope,
            used=profile.monthly_checks_used,
            limit=None if premium else self.limit,
            can_check=premium or profile.monthly_checks_used < self.limit,
            tier=profile.subscription_tier,
            reset_error=reset_error,
        )

    def _replace_profile(self, profile: UserProfile) -> None:
        self.profile = profile
        if self.on_profile_change:
            self.on_profile_change(profile)

    async def status(self) -> QuotaStatus:
        now = self.clock()
        if not is_later_period(now, self.profile.last_reset_date):
            return self._status_for(self.profile)

        logger.info(f"New quota period for {self.profile.uid}; resetting monthly checks")
        try:
            await self.profiles.update(self.profile.uid, {
                'monthly_checks_used': 0,
                'last_reset_date': now.isoformat(),
            })
        except AppError as e:
            # Judge against the last known counter and let the caller report it.
            logger.error(f"Monthly quota reset failed for {self.profile.uid}: {e.message}")
            return self._status_for(self.profile, reset_error=e.user_message)

        self._replace_profile(self.profile.model_copy(update={
            'monthly_checks_used': 0,
            'last_reset_date': now,
        }))
        return self._status_for(self.profile)

    async def record_check(self) -> QuotaStatus:
        used = self.profile.monthly_checks_used + 1
        await self.profiles.update(self.profile.uid, {'monthly_checks_used': used})
        self._replace_profile(self.profile.model_copy(update={'monthly_checks_used': used}))
        logger.info(f"Monthly checks used by {self.profile.uid}: {used}")
        return self._status_for(self.profile)
