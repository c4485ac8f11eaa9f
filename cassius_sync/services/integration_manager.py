from typing import Dict, Any, List, Optional, Callable
from urllib.parse import urlencode
from sqlalchemy.orm import Session
import logging

from cassius_sync.database.models import SyncIntegration
from cassius_sync.errors import NotFoundError
from cassius_sync.integrations.google_calendar import CalendarAdapter, GoogleCalendarClient
from cassius_sync.integrations.oauth import GoogleOAuth
from cassius_sync.models.integration import IntegrationSettings
from .calendar_sync_service import get_integration, store_refreshed_tokens
from .conflict_store import ConflictStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[SyncIntegration, Any], CalendarAdapter]


def default_adapter_factory(integration: SyncIntegration, config) -> CalendarAdapter:
    return GoogleCalendarClient.from_integration(integration, config)


def settings_redirect(config, **params) -> str:
    base = config.get('app.base_url', 'http://localhost:5000')
    path = config.get('app.settings_path', '/settings/integrations/google-calendar')
    return f"{base}{path}?{urlencode(params)}"


class IntegrationManager:
    """Connect, configure and disconnect one tenant's Google Calendar"""

    def __init__(self, session: Session, tenant_id: str, config,
                 adapter_factory: Optional[AdapterFactory] = None, oauth: Optional[GoogleOAuth] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.config = config
        self.adapter_factory = adapter_factory or default_adapter_factory
        self.oauth = oauth or GoogleOAuth(config)

    def get_integration(self) -> Optional[SyncIntegration]:
        return get_integration(self.session, self.tenant_id)

    def require_integration(self) -> SyncIntegration:
        integration = self.get_integration()
        if integration is None:
            raise NotFoundError("Google Calendar integration")
        return integration

    def adapter(self, integration: Optional[SyncIntegration] = None) -> CalendarAdapter:
        return self.adapter_factory(integration or self.require_integration(), self.config)

    def status(self) -> Dict[str, Any]:
        integration = self.get_integration()
        return {
            'configured': self.config.is_google_configured(),
            'connected': integration is not None and bool(integration.refresh_token or integration.access_token),
            'integration': integration.to_dict() if integration else None,
            'openConflicts': ConflictStore(self.session, self.tenant_id).count('open')
        }

    def connect_url(self) -> str:
        return self.oauth.authorization_url(self.tenant_id)

    def save_tokens(self, tokens: Dict[str, Any]) -> SyncIntegration:
        """Persist the tokens of a completed consent, creating the integration if needed"""
        integration = self.get_integration()
        if integration is None:
            integration = SyncIntegration(tenant_id=self.tenant_id, provider='google', is_enabled=True)
            self.session.add(integration)

        integration.access_token = tokens.get('access_token')
        # Google omits the refresh token when consent was already granted
        if tokens.get('refresh_token'):
            integration.refresh_token = tokens['refresh_token']
        integration.token_expires_at = tokens.get('expires_at')
        integration.scope = tokens.get('scope')
        if tokens.get('email'):
            integration.provider_user_email = tokens['email']
        integration.sync_error_count = 0
        integration.last_sync_error = None
        self.session.commit()
        logger.info(f"Google Calendar connected for tenant {self.tenant_id} ({integration.provider_user_email})")
        return integration

    def list_calendars(self) -> List[Dict[str, Any]]:
        integration = self.require_integration()
        adapter = self.adapter(integration)
        calendars = adapter.list_calendars()
        store_refreshed_tokens(adapter, integration)
        self.session.commit()
        return calendars

    def update_settings(self, settings: IntegrationSettings) -> Dict[str, Any]:
        integration = self.require_integration()
        for field, value in settings.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(integration, field, value)
        self.session.commit()
        logger.info(f"Updated Google Calendar settings for tenant {self.tenant_id}")
        return integration.to_dict()

    def disconnect(self) -> bool:
        integration = self.require_integration()
        self.session.delete(integration)
        self.session.commit()
        logger.info(f"Google Calendar disconnected for tenant {self.tenant_id}")
        return True


def handle_oauth_callback(session: Session, config, oauth: GoogleOAuth, code: Optional[str],
                          state: Optional[str], error: Optional[str] = None) -> str:
    """Complete the consent round trip; returns the settings URL to redirect to"""
    if error:
        logger.warning(f"Google consent refused: {error}")
        return settings_redirect(config, error='consent_denied')
    if not code or not state:
        return settings_redirect(config, error='missing_params')
    if not config.is_google_configured():
        return settings_redirect(config, error='not_configured')

    tenant_id = oauth.verify_state(state)
    if not tenant_id:
        return settings_redirect(config, error='invalid_state')

    try:
        tokens = oauth.exchange_code(code)
    except Exception as e:
        logger.error(f"Google token exchange failed for tenant {tenant_id}: {e}")
        return settings_redirect(config, error='token_exchange_failed')

    IntegrationManager(session, tenant_id, config, oauth=oauth).save_tokens(tokens)
    return settings_redirect(config, connected='1')
