import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from lib.error_handler import AppError, AuthError, ValidationError
from lib.models import Identity, UserProfile, utcnow
from .profile import ProfileRepository, build_new_profile, reconcile_profile

logger = logging.getLogger(__name__)

class SessionState(str, Enum):
    SIGNED_OUT = 'signed_out'
    SIGNING_IN = 'signing_in'
    SIGNED_IN = 'signed_in'

Subscriber = Callable[['SessionManager'], None]

class SessionManager:
    """Holds one session's identity and profile and tells subscribers about changes.

    Created per browser session. It starts listening to the identity provider
    when the first subscriber arrives and stops on :meth:`close`.
    """

    def __init__(self, identity_provider, profile_repository: ProfileRepository, clock=utcnow):
        self.identity_provider = identity_provider
        self.profiles = profile_repository
        self.clock = clock

        self.state = SessionState.SIGNED_OUT
        self.identity: Optional[Identity] = None
        self.profile: Optional[UserProfile] = None
        self.tokens: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None

        self._subscribers: List[Subscriber] = []
        self._provider_unsubscribe: Optional[Callable[[], None]] = None
        self._initial_data: Dict[str, Optional[str]] = {}

    @property
    def is_signed_in(self) -> bool:
        return self.state == SessionState.SIGNED_IN

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        if self._provider_unsubscribe is None:
            self._provider_unsubscribe = self.identity_provider.on_session_change(self.handle_session_change)
        self._subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        return unsubscribe

    def close(self) -> None:
        if self._provider_unsubscribe is not None:
            self._provider_unsubscribe()
            self._provider_unsubscribe = None
        self._subscribers.clear()

    def _notify(self) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(self)
            except Exception as e:
                logger.error(f"Session subscriber failed: {str(e)}", exc_info=True)

    def _transition(self, state: SessionState) -> None:
        logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state
        self._notify()

    def remember_sign_up_data(self, display_name: Optional[str] = None, phone_number: Optional[str] = None) -> None:
        """Data to seed the profile with if the next sign-in creates it."""
        self._initial_data = {'display_name': display_name, 'phone_number': phone_number}

    async def handle_session_change(self, identity: Optional[Identity], tokens: Optional[Dict[str, Any]] = None) -> None:
        if identity is None:
            self._sign_out_locally()
            return

        self.identity = identity
        self.tokens = tokens
        self.error = None
        self._transition(SessionState.SIGNING_IN)
        try:
            self.profile = await self._load_profile(identity)
        except AppError as e:
            logger.error(f"Error loading profile for {identity.uid}: {e.message}")
            self._sign_out_locally(error=e.user_message)
            return
        self._initial_data = {}
        self._transition(SessionState.SIGNED_IN)

    def _sign_out_locally(self, error: Optional[str] = None) -> None:
        self.identity = None
        self.profile = None
        self.tokens = None
        self.error = error
        self._transition(SessionState.SIGNED_OUT)

    async def _load_profile(self, identity: Identity) -> UserProfile:
        stored = await self.profiles.get(identity.uid)
        now = self.clock()
        if stored is None:
            logger.info(f"No existing profile for {identity.uid}; creating one")
            profile = build_new_profile(
                identity,
                now=now,
                display_name=self._initial_data.get('display_name'),
                phone_number=self._initial_data.get('phone_number'),
            )
            await self.profiles.create(profile)
            return profile

        profile, delta = reconcile_profile(stored, identity, now=now)
        if delta:
            await self.profiles.update(identity.uid, delta)
        return profile

    async def refresh(self) -> Optional[UserProfile]:
        if self.identity is None:
            self._sign_out_locally()
            return None
        await self.handle_session_change(self.identity, self.tokens)
        return self.profile

    def replace_profile(self, profile: UserProfile) -> None:
        self.profile = profile
        self._notify()

    def require_signed_in(self) -> UserProfile:
        if not self.is_signed_in or self.profile is None:
            raise AuthError("Not authenticated", user_message="You must be logged in to do that.")
        return self.profile

    async def update_display_name(self, display_name: str) -> UserProfile:
        profile = self.require_signed_in()
        display_name = (display_name or '').strip()
        if not display_name:
            raise ValidationError("Display name cannot be empty.")
        await self.identity_provider.update_display_name(display_name)
        await self.profiles.update(profile.uid, {'display_name': display_name})
        self.identity = self.identity.model_copy(update={'display_name': display_name})
        self.replace_profile(profile.model_copy(update={'display_name': display_name}))
        return self.profile

    async def update_phone_number(self, phone_number: Optional[str]) -> UserProfile:
        profile = self.require_signed_in()
        phone_number = (phone_number or '').strip() or None
        await self.profiles.update(profile.uid, {'phone_number': phone_number})
        self.replace_profile(profile.model_copy(update={'phone_number': phone_number}))
        return self.profile
