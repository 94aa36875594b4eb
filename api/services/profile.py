import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from lib.error_handler import StorageError
from lib.models import Identity, SubscriptionTier, UserProfile, utcnow

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = 'Anonymous User'

class ProfileDocument(BaseModel):
    """A profile row as stored remotely. Any field may be missing (None)."""
    model_config = ConfigDict(extra='ignore')

    uid: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    phone_number: Optional[str] = None
    monthly_checks_used: Optional[int] = None
    last_reset_date: Optional[datetime] = None
    subscription_tier: Optional[SubscriptionTier] = None
    created_at: Optional[datetime] = None
    provider_id: Optional[str] = None

def initial_display_name(identity: Identity, requested: Optional[str] = None) -> str:
    if requested:
        return requested
    if identity.display_name:
        return identity.display_name
    if identity.email:
        return identity.email.split('@')[0]
    return DEFAULT_DISPLAY_NAME

def build_new_profile(
    identity: Identity,
    now: Optional[datetime] = None,
    display_name: Optional[str] = None,
    phone_number: Optional[str] = None
) -> UserProfile:
    now = now or utcnow()
    return UserProfile(
        uid=identity.uid,
        email=identity.email,
        display_name=initial_display_name(identity, display_name),
        photo_url=identity.photo_url,
        phone_number=phone_number or None,
        monthly_checks_used=0,
        last_reset_date=now,
        subscription_tier=SubscriptionTier.FREE,
        created_at=now,
        provider_id=identity.provider_id,
    )

def reconcile_profile(
    stored: ProfileDocument,
    identity: Identity,
    now: Optional[datetime] = None
) -> Tuple[UserProfile, Dict[str, Any]]:
    """Merge a stored profile with what the identity provider reports.

    Returns the merged profile and the minimal set of fields to write back.
    Non-empty provider values win over stored ones; missing quota fields get
    their defaults. Running it again on the merged result yields no delta.
    """
    now = now or utcnow()
    delta: Dict[str, Any] = {}

    display_name = stored.display_name
    if identity.display_name and identity.display_name != stored.display_name:
        display_name = identity.display_name
        delta['display_name'] = display_name

    photo_url = stored.photo_url
    if identity.photo_url and identity.photo_url != stored.photo_url:
        photo_url = identity.photo_url
        delta['photo_url'] = photo_url

    provider_id = stored.provider_id
    if provider_id is None and identity.provider_id != 'unknown':
        provider_id = identity.provider_id
        delta['provider_id'] = provider_id

    if stored.uid is None:
        delta['uid'] = identity.uid
    email = stored.email
    if email is None and identity.email:
        email = identity.email
        delta['email'] = email

    monthly_checks_used = stored.monthly_checks_used
    if monthly_checks_used is None:
        monthly_checks_used = 0
        delta['monthly_checks_used'] = 0

    subscription_tier = stored.subscription_tier
    if subscription_tier is None:
        subscription_tier = SubscriptionTier.FREE
        delta['subscription_tier'] = SubscriptionTier.FREE.value

    last_reset_date = stored.last_reset_date
    if last_reset_date is None:
        last_reset_date = now
        delta['last_reset_date'] = now.isoformat()

    created_at = stored.created_at
    if created_at is None:
        created_at = now
        delta['created_at'] = now.isoformat()

    profile = UserProfile(
        uid=stored.uid or identity.uid,
        email=email,
        display_name=display_name or initial_display_name(identity),
        photo_url=photo_url,
        phone_number=stored.phone_number,
        monthly_checks_used=monthly_checks_used,
        last_reset_date=last_reset_date,
        subscription_tier=subscription_tier,
        created_at=created_at,
        provider_id=provider_id or identity.provider_id,
    )
    return profile, delta

class ProfileRepository:
    def __init__(self, supabase_client):
        self.supabase = supabase_client
        self.profiles_table = 'profiles'

    async def get(self, uid: str) -> Optional[ProfileDocument]:
        try:
            result = self.supabase.table(self.profiles_table)\
                .select('*')\
                .eq('uid', uid)\
                .execute()
            if hasattr(result, 'error') and result.error:
                raise Exception(f"Supabase error: {result.error}")
        except Exception as e:
            logger.error(f"Failed to fetch profile for {uid}: {str(e)}")
            raise StorageError(f"Failed to fetch user profile: {str(e)}") from e

        if not result.data:
            return None
        return ProfileDocument.model_validate(result.data[0])

    async def create(self, profile: UserProfile) -> None:
        try:
            logger.info(f"Creating profile for {profile.uid}")
            result = self.supabase.table(self.profiles_table).insert(profile.to_document()).execute()
            if hasattr(result, 'error') and result.error:
                raise Exception(f"Supabase error: {result.error}")
        except Exception as e:
            logger.error(f"Failed to create profile for {profile.uid}: {str(e)}")
            raise StorageError(f"Failed to create user profile: {str(e)}") from e

    async def update(self, uid: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        try:
            logger.info(f"Updating profile for {uid}: {sorted(updates)}")
            result = self.supabase.table(self.profiles_table)\
                .update(updates)\
                .eq('uid', uid)\
                .execute()
            if hasattr(result, 'error') and result.error:
                raise Exception(f"Supabase error: {result.error}")
        except Exception as e:
            logger.error(f"Failed to update profile for {uid}: {str(e)}")
            raise StorageError(f"Failed to update user profile: {str(e)}") from e
