import logging
from typing import Any, Callable, Dict, List, Optional

from lib.error_handler import AuthError, ValidationError
from lib.models import Identity

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6

SessionListener = Callable[[Optional[Identity], Optional[Dict[str, Any]]], Any]

# Supabase Auth error codes mapped to messages shown to the user.
FRIENDLY_AUTH_ERRORS = {
    'invalid_credentials': 'Invalid email or password.',
    'user_not_found': 'Invalid email or password.',
    'email_exists': 'This email address is already in use.',
    'user_already_exists': 'This email address is already in use.',
    'weak_password': 'The new password is too weak. Please choose a stronger password.',
    'reauthentication_needed': (
        'This operation is sensitive and requires recent authentication. '
        'Please log out and log back in before changing your password.'
    ),
    'flow_state_expired': 'Sign-in was cancelled or expired. Please try again.',
    'bad_oauth_callback': 'Sign-in was cancelled or expired. Please try again.',
}

def identity_from_user(user) -> Identity:
    """Build an Identity from a Supabase Auth user object."""
    metadata = getattr(user, 'user_metadata', None) or {}
    app_metadata = getattr(user, 'app_metadata', None) or {}
    return Identity(
        uid=str(user.id),
        email=getattr(user, 'email', None),
        display_name=metadata.get('display_name') or metadata.get('full_name') or metadata.get('name'),
        photo_url=metadata.get('avatar_url') or metadata.get('picture'),
        provider_id=app_metadata.get('provider') or 'unknown',
    )

def session_tokens(session) -> Optional[Dict[str, Any]]:
    if session is None:
        return None
    return {
        'access_token': session.access_token,
        'refresh_token': session.refresh_token,
    }

def validate_credentials(email: str, password: str) -> None:
    if not email or not email.strip():
        raise ValidationError("Email is required.")
    if not password:
        raise ValidationError("Password is required.")

def validate_new_password(password: str, confirm_password: Optional[str] = None) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if confirm_password is not None and password != confirm_password:
        raise ValidationError("Passwords do not match.")

def _friendly_message(error: Exception, fallback: str) -> str:
    code = getattr(error, 'code', None)
    if code in FRIENDLY_AUTH_ERRORS:
        return FRIENDLY_AUTH_ERRORS[code]
    return str(error) or fallback

class IdentityProvider:
    """Thin adapter over Supabase Auth.

    Every session change (sign-in, code exchange, sign-out) is announced to
    listeners as ``(identity, tokens)``; ``(None, None)`` means signed out.
    """

    def __init__(self, supabase_client, site_url: str = ''):
        self.auth = supabase_client.auth
        self.site_url = site_url.rstrip('/')
        self._listeners: List[SessionListener] = []

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    async def _emit(self, identity: Optional[Identity], tokens: Optional[Dict[str, Any]] = None) -> None:
        for listener in list(self._listeners):
            result = listener(identity, tokens)
            if hasattr(result, '__await__'):
                await result

    async def sign_up_with_email(self, email: str, password: str, display_name: str) -> Identity:
        validate_credentials(email, password)
        validate_new_password(password)
        if not display_name or not display_name.strip():
            raise ValidationError("Display name is required.")
        try:
            logger.info(f"Attempting email sign up for: {email}")
            response = self.auth.sign_up({
                'email': email.strip(),
                'password': password,
                'options': {'data': {'display_name': display_name.strip()}},
            })
        except Exception as e:
            logger.error(f"Sign up error: {str(e)}")
            raise AuthError(f"Sign up failed: {str(e)}",
                            user_message=_friendly_message(e, "Failed to sign up."),
                            status_code=400) from e

        if response.user is None:
            raise AuthError("Sign up returned no user", user_message="Failed to sign up.", status_code=400)
        identity = identity_from_user(response.user)
        if response.session is not None:
            await self._emit(identity, session_tokens(response.session))
        return identity

    async def sign_in_with_email(self, email: str, password: str) -> Identity:
        validate_credentials(email, password)
        try:
            logger.info(f"Attempting email sign in for: {email}")
            response = self.auth.sign_in_with_password({'email': email.strip(), 'password': password})
        except Exception as e:
            logger.error(f"Sign in error: {str(e)}")
            raise AuthError(f"Sign in failed: {str(e)}",
                            user_message=_friendly_message(e, "Failed to sign in.")) from e

        identity = identity_from_user(response.user)
        await self._emit(identity, session_tokens(response.session))
        return identity

    def federated_sign_in_url(self, provider: str, redirect_path: str = '/auth/callback') -> str:
        try:
            response = self.auth.sign_in_with_oauth({
                'provider': provider,
                'options': {'redirect_to': f"{self.site_url}{redirect_path}"},
            })
        except Exception as e:
            logger.error(f"Federated sign in error for {provider}: {str(e)}")
            raise AuthError(f"Federated sign in failed: {str(e)}",
                            user_message=f"Failed to sign in with {provider.title()}.",
                            status_code=400) from e
        return response.url

    async def complete_federated_sign_in(self, auth_code: str) -> Identity:
        if not auth_code:
            raise AuthError("Missing auth code", user_message="Sign-in was cancelled.", status_code=400)
        try:
            response = self.auth.exchange_code_for_session({'auth_code': auth_code})
        except Exception as e:
            logger.error(f"Code exchange error: {str(e)}")
            raise AuthError(f"Code exchange failed: {str(e)}",
                            user_message=_friendly_message(e, "Failed to complete sign in.")) from e

        identity = identity_from_user(response.user)
        await self._emit(identity, session_tokens(response.session))
        return identity

    async def restore_session(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> Optional[Identity]:
        """Validate stored tokens and announce the resulting session state."""
        if not access_token:
            await self._emit(None)
            return None
        try:
            response = self.auth.get_user(access_token)
        except Exception as e:
            logger.warning(f"Stored session is no longer valid: {str(e)}")
            await self._emit(None)
            return None

        if response is None or response.user is None:
            await self._emit(None)
            return None
        identity = identity_from_user(response.user)
        if refresh_token:
            try:
                self.auth.set_session(access_token, refresh_token)
            except Exception as e:
                logger.warning(f"Could not attach session to auth client: {str(e)}")
        await self._emit(identity, {'access_token': access_token, 'refresh_token': refresh_token})
        return identity

    async def sign_out(self) -> None:
        try:
            logger.info("Attempting sign out")
            self.auth.sign_out()
        except Exception as e:
            logger.error(f"Sign out error: {str(e)}")
            raise AuthError(f"Sign out failed: {str(e)}",
                            user_message="Failed to sign out.", status_code=500) from e
        await self._emit(None)

    async def update_display_name(self, display_name: str) -> None:
        try:
            self.auth.update_user({'data': {'display_name': display_name}})
        except Exception as e:
            logger.error(f"Error updating display name: {str(e)}")
            raise AuthError(f"Display name update failed: {str(e)}",
                            user_message="Failed to update display name.", status_code=400) from e

    async def change_password(self, identity: Identity, new_password: str) -> None:
        if not identity.is_password_account:
            raise AuthError(
                "Password change not applicable for this provider.",
                user_message=(
                    "Password change is not available for accounts signed in with "
                    f"{identity.provider_id.title()}. Please change your password through that provider."
                ),
                status_code=400
            )
        validate_new_password(new_password)
        try:
            self.auth.update_user({'password': new_password})
        except Exception as e:
            logger.error(f"Error changing password: {str(e)}")
            raise AuthError(f"Password change failed: {str(e)}",
                            user_message=_friendly_message(e, "Failed to change password."),
                            status_code=400) from e
