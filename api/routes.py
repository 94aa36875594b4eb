from flask import Blueprint, Flask, request, jsonify, redirect, session, g, current_app
import logging
import uuid
from urllib.parse import urlencode

from openai import OpenAI
from supabase import create_client
from werkzeug.exceptions import HTTPException

from lib.config import Settings, get_settings
from lib.error_handler import (
    AnalysisError,
    AppError,
    AuthError,
    CaptureError,
    ErrorHandler,
    StorageError,
    ValidationError,
)
from lib.local_storage import LocalStorage
from .cli import register_cli
from .services.analysis import AnalysisGateway
from .services.auth import IdentityProvider, validate_new_password
from .services.profile import ProfileRepository
from .services.quota import AccountQuotaLedger, AnonymousQuotaLedger
from .services.session import SessionManager, SessionState
from .services.storage import report_store_for
from .services.stress_check import StressCheckService

logger = logging.getLogger(__name__)

CLIENT_SESSION_COOKIE = 'clientSession'
ANONYMOUS_ID_COOKIE = 'anonymousId'
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 7

# Reachable without the session cookie. Prefix match, plus the home page.
PUBLIC_PATHS = (
    '/login',
    '/signup',
    '/auth/callback',
    '/stress-check',
    '/reports',
    '/static',
    '/health',
)

def is_public_path(path: str) -> bool:
    return path == '/' or any(path.startswith(prefix) for prefix in PUBLIC_PATHS)

def create_app(settings: Settings = None, supabase_factory=None, openai_client=None) -> Flask:
    settings = settings or get_settings()

    app = Flask(__name__)
    app.secret_key = settings.secret_key
    app.config['STRESS_SETTINGS'] = settings

    def default_supabase_factory():
        if not settings.supabase_url or not settings.supabase_key:
            raise StorageError(
                "Supabase is not configured",
                user_message="Account services are not configured. Please try again later."
            )
        return create_client(settings.supabase_url, settings.supabase_key)

    app.config['SUPABASE_FACTORY'] = supabase_factory or default_supabase_factory

    if openai_client is None:
        logger.info("Initializing OpenAI client...")
        openai_client = OpenAI(api_key=settings.openai_api_key) if settings.openai_api_key else None
    if openai_client is None:
        logger.warning("OPENAI_API_KEY is not set; stress checks will fail until it is configured")
    gateway = AnalysisGateway(openai_client=openai_client, model=settings.openai_model)
    app.extensions['stress_check'] = StressCheckService(gateway)
    logger.info("Services initialized")

    app.before_request(route_guard)
    app.after_request(apply_session_cookies)
    app.teardown_request(close_session_manager)
    app.register_error_handler(AppError, handle_app_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    app.register_blueprint(_blueprint())

    register_cli(app)
    return app

# ---------------------------------------------------------------------------
# Request plumbing
# ---------------------------------------------------------------------------

def route_guard():
    """Advisory check on the client session cookie.

    It only checks that the cookie is present; handlers that act on an
    account validate the access token with the identity provider.
    """
    path = request.path
    if is_public_path(path):
        return None
    if request.cookies.get(CLIENT_SESSION_COOKIE) == 'true':
        return None
    logger.info(f"No active client session, redirecting to login from {path}")
    return redirect(f"/login?{urlencode({'redirectedFrom': path})}")

def _settings() -> Settings:
    return current_app.config['STRESS_SETTINGS']

def _supabase():
    if 'supabase' not in g:
        g.supabase = current_app.config['SUPABASE_FACTORY']()
    return g.supabase

def _anonymous_id() -> str:
    if 'anonymous_id' not in g:
        g.anonymous_id = request.cookies.get(ANONYMOUS_ID_COOKIE) or str(uuid.uuid4())
    return g.anonymous_id

def _local_storage() -> LocalStorage:
    return LocalStorage(_settings().local_storage_path, _anonymous_id())

def _sync_session(manager: SessionManager) -> None:
    if manager.state == SessionState.SIGNED_IN:
        if manager.tokens:
            session['access_token'] = manager.tokens.get('access_token')
            session['refresh_token'] = manager.tokens.get('refresh_token')
        g.client_session = True
    elif manager.state == SessionState.SIGNED_OUT:
        session.pop('access_token', None)
        session.pop('refresh_token', None)
        g.client_session = False

async def current_session(restore: bool = True) -> SessionManager:
    """The request's session manager, restored from the stored tokens once."""
    manager = g.get('session_manager')
    if manager is None:
        supabase_client = _supabase()
        provider = IdentityProvider(supabase_client, site_url=_settings().site_url)
        manager = SessionManager(provider, ProfileRepository(supabase_client))
        manager.subscribe(_sync_session)
        g.session_manager = manager
        g.identity_provider = provider
        if restore and session.get('access_token'):
            await provider.restore_session(session.get('access_token'), session.get('refresh_token'))
    return manager

async def caller_session():
    """Session for the caller if they hold tokens, else None (anonymous)."""
    if not session.get('access_token'):
        return None
    manager = await current_session()
    return manager if manager.is_signed_in else None

def apply_session_cookies(response):
    if 'anonymous_id' in g and request.cookies.get(ANONYMOUS_ID_COOKIE) != g.anonymous_id:
        response.set_cookie(ANONYMOUS_ID_COOKIE, g.anonymous_id, max_age=60 * 60 * 24 * 365,
                            httponly=True, samesite='Lax')
    client_session = g.get('client_session')
    if client_session is True:
        response.set_cookie(CLIENT_SESSION_COOKIE, 'true', max_age=SESSION_COOKIE_MAX_AGE, path='/')
    elif client_session is False and request.cookies.get(CLIENT_SESSION_COOKIE):
        response.delete_cookie(CLIENT_SESSION_COOKIE, path='/')
    return response

def close_session_manager(exc=None):
    manager = g.pop('session_manager', None)
    if manager is not None:
        manager.close()

ERROR_LOGGERS = (
    (AnalysisError, ErrorHandler.handle_analysis_error),
    (StorageError, ErrorHandler.handle_storage_error),
    (AuthError, ErrorHandler.handle_auth_error),
    (CaptureError, ErrorHandler.handle_capture_error),
)

def safe_next_path(target) -> str:
    """Only same-site paths are followed after sign-in."""
    if not target or not target.startswith('/') or target.startswith('//') or '\\' in target:
        return '/'
    return target

def handle_app_error(error: AppError):
    for error_type, log_error in ERROR_LOGGERS:
        if isinstance(error, error_type):
            message = log_error(error)
            break
    else:
        logger.warning(f"{type(error).__name__}: {error.message}")
        message = error.user_message
    body = {'status': 'error', 'message': message}
    scope = getattr(error, 'scope', None)
    if scope:
        body['quotaScope'] = scope
        body['action'] = 'signup' if scope == 'anonymous' else 'upgrade'
    return jsonify(body), error.status_code

def handle_unexpected_error(error: Exception):
    # Let Flask render its own HTTP errors (404, 405, ...)
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Unhandled error: {str(error)}", exc_info=True)
    return jsonify({'status': 'error', 'message': 'An error occurred. Please try again later.'}), 500

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data

def _profile_json(profile):
    return profile.model_dump(mode='json') if profile else None

def _quota_json(status):
    data = status.model_dump(mode='json')
    data['remaining'] = status.remaining
    return data

# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

def _blueprint():
    bp = Blueprint('stress', __name__)

    @bp.route('/health', methods=['GET'])
    def health():
        """Basic health check"""
        return jsonify({'status': 'healthy'})

    @bp.route('/', methods=['GET'])
    async def home():
        manager = await caller_session()
        return jsonify({
            'status': 'ok',
            'message': 'Stress check service is running',
            'signedIn': manager is not None,
            'user': _profile_json(manager.profile) if manager else None,
        })

    async def _ledger_and_store():
        settings = _settings()
        manager = await caller_session()
        if manager is not None:
            supabase_client = _supabase()
            ledger = AccountQuotaLedger(
                manager.profile,
                ProfileRepository(supabase_client),
                limit=settings.max_free_monthly_checks,
                on_profile_change=manager.replace_profile
            )
            store = report_store_for(manager.identity, supabase_client=supabase_client)
            return f"user:{manager.identity.uid}", ledger, store

        local_storage = _local_storage()
        ledger = AnonymousQuotaLedger(local_storage, limit=settings.max_anonymous_checks)
        store = report_store_for(None, local_storage=local_storage)
        return f"anonymous:{_anonymous_id()}", ledger, store

    @bp.route('/stress-check', methods=['GET'])
    async def quota_status():
        _, ledger, _ = await _ledger_and_store()
        status = await ledger.status()
        if status.reset_error:
            logger.warning(f"Quota reset could not be saved: {status.reset_error}")
        return jsonify({'status': 'ok', 'quota': _quota_json(status)})

    @bp.route('/stress-check', methods=['POST'])
    async def run_stress_check():
        data = _json_body()
        payload = data.get('audio')
        media_type = data.get('mimeType')
        if not payload or not media_type:
            raise ValidationError("Base64 audio data and MIME type are required.")

        identity_key, ledger, store = await _ledger_and_store()
        service: StressCheckService = current_app.extensions['stress_check']
        outcome = await service.run(identity_key, ledger, store, payload, media_type)

        body = {
            'status': 'success',
            'report': outcome.report.model_dump(mode='json', by_alias=True),
            'quota': _quota_json(outcome.quota),
        }
        if outcome.warning:
            body['warning'] = outcome.warning
        return jsonify(body)

    @bp.route('/reports', methods=['GET'])
    async def list_reports():
        _, _, store = await _ledger_and_store()
        reports = await store.list()
        return jsonify({
            'status': 'ok',
            'scope': store.scope,
            'reports': [report.model_dump(mode='json', by_alias=True) for report in reports],
        })

    @bp.route('/signup', methods=['POST'])
    async def signup():
        data = _json_body()
        password = data.get('password') or ''
        validate_new_password(password, data.get('confirmPassword'))
        manager = await current_session(restore=False)
        manager.remember_sign_up_data(
            display_name=(data.get('displayName') or '').strip() or None,
            phone_number=(data.get('phoneNumber') or '').strip() or None,
        )
        identity = await g.identity_provider.sign_up_with_email(
            data.get('email') or '', password, data.get('displayName') or ''
        )
        if manager.error:
            raise StorageError(manager.error, user_message=manager.error)
        return jsonify({
            'status': 'success',
            'message': 'Your account has been successfully created.',
            'uid': identity.uid,
            'signedIn': manager.is_signed_in,
            'user': _profile_json(manager.profile),
        }), 201

    @bp.route('/login', methods=['GET'])
    def login_required_notice():
        return jsonify({
            'status': 'error',
            'message': 'Please log in to continue.',
            'redirectedFrom': request.args.get('redirectedFrom'),
        }), 401

    @bp.route('/login', methods=['POST'])
    async def login():
        data = _json_body()
        manager = await current_session(restore=False)
        await g.identity_provider.sign_in_with_email(data.get('email') or '', data.get('password') or '')
        if not manager.is_signed_in:
            raise StorageError(manager.error or "Failed to load user profile.",
                               user_message=manager.error or "Failed to load user profile.")
        return jsonify({'status': 'success', 'message': 'Welcome back!', 'user': _profile_json(manager.profile)})

    @bp.route('/login/<provider>', methods=['GET'])
    async def federated_login(provider):
        await current_session(restore=False)
        return redirect(g.identity_provider.federated_sign_in_url(provider))

    @bp.route('/auth/callback', methods=['GET'])
    async def auth_callback():
        manager = await current_session(restore=False)
        await g.identity_provider.complete_federated_sign_in(request.args.get('code'))
        if not manager.is_signed_in:
            raise StorageError(manager.error or "Failed to load user profile.",
                               user_message=manager.error or "Failed to load user profile.")
        return redirect(safe_next_path(request.args.get('next')))

    @bp.route('/logout', methods=['POST'])
    async def logout():
        await current_session()
        await g.identity_provider.sign_out()
        return jsonify({'status': 'success', 'message': 'You have been successfully logged out.'})

    @bp.route('/profile', methods=['GET'])
    async def get_profile():
        manager = await current_session()
        profile = manager.require_signed_in()
        return jsonify({'status': 'ok', 'user': _profile_json(profile)})

    @bp.route('/profile', methods=['PATCH'])
    async def update_profile():
        data = _json_body()
        manager = await current_session()
        manager.require_signed_in()
        if 'displayName' in data:
            await manager.update_display_name(data.get('displayName') or '')
        if 'phoneNumber' in data:
            await manager.update_phone_number(data.get('phoneNumber'))
        return jsonify({'status': 'success', 'message': 'Your profile has been updated.',
                        'user': _profile_json(manager.profile)})

    @bp.route('/change-password', methods=['POST'])
    async def change_password():
        data = _json_body()
        manager = await current_session()
        manager.require_signed_in()
        new_password = data.get('newPassword') or ''
        validate_new_password(new_password, data.get('confirmPassword'))
        await g.identity_provider.change_password(manager.identity, new_password)
        return jsonify({'status': 'success', 'message': 'Your password has been successfully updated.'})

    return bp
