"""
Google OAuth connect flow: signed state, consent URL and code exchange
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import secrets
import time
from typing import Optional, Dict, Any

from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from cassius_sync.errors import IntegrationNotConfiguredError
from .google_calendar import SCOPES, TOKEN_URI

logger = logging.getLogger(__name__)

AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
STATE_MAX_AGE_SECONDS = 15 * 60


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode('utf-8'), payload.encode('utf-8'), hashlib.sha256).hexdigest()


def generate_state(tenant_id: str, secret: str, now: Optional[float] = None) -> str:
    """Signed, url-safe state binding the consent round trip to one tenant"""
    payload = json.dumps({
        'tenantId': tenant_id,
        'nonce': secrets.token_hex(16),
        'ts': int((now if now is not None else time.time()) * 1000)
    })
    envelope = json.dumps({'payload': payload, 'signature': _sign(payload, secret)})
    return base64.urlsafe_b64encode(envelope.encode('utf-8')).decode('ascii').rstrip('=')


def verify_state(state: str, secret: str, now: Optional[float] = None) -> Optional[str]:
    """Return the tenant id carried by a valid state, None otherwise"""
    try:
        padded = state + '=' * (-len(state) % 4)
        envelope = json.loads(base64.urlsafe_b64decode(padded.encode('ascii')))
        payload = envelope['payload']
        signature = envelope['signature']
        if not isinstance(payload, str) or not isinstance(signature, str):
            raise TypeError("payload and signature must be strings")
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed OAuth state: {e}")
        return None

    if not hmac.compare_digest(signature.encode('utf-8'), _sign(payload, secret).encode('utf-8')):
        logger.warning("OAuth state signature mismatch")
        return None

    try:
        data = json.loads(payload)
        issued_at = float(data['ts'])
        tenant_id = data['tenantId']
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed OAuth state payload: {e}")
        return None

    current = now if now is not None else time.time()
    if current * 1000 - issued_at > STATE_MAX_AGE_SECONDS * 1000:
        logger.warning("OAuth state expired")
        return None
    return tenant_id if isinstance(tenant_id, str) and tenant_id else None


class GoogleOAuth:
    def __init__(self, config):
        self.config = config

    def _require_configured(self):
        missing = self.config.missing_google_settings()
        if missing:
            raise IntegrationNotConfiguredError(
                f"Google Calendar integration is not configured (missing {', '.join(missing)})"
            )

    def _flow(self, state: Optional[str] = None) -> Flow:
        redirect_uri = self.config.get('google.redirect_uri')
        client_config = {
            'web': {
                'client_id': self.config.get('google.client_id'),
                'client_secret': self.config.get('google.client_secret'),
                'auth_uri': AUTH_URI,
                'token_uri': TOKEN_URI,
                'redirect_uris': [redirect_uri]
            }
        }
        # Authorization and exchange happen in different requests, so no PKCE verifier
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            state=state,
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False
        )

    def authorization_url(self, tenant_id: str) -> str:
        """Consent URL; offline access and forced consent so a refresh token is issued"""
        self._require_configured()
        state = generate_state(tenant_id, self.config.get('google.state_secret'))
        url, _ = self._flow(state=state).authorization_url(
            access_type='offline',
            prompt='consent',
            include_granted_scopes='true'
        )
        return url

    def verify_state(self, state: str) -> Optional[str]:
        self._require_configured()
        return verify_state(state, self.config.get('google.state_secret'))

    def exchange_code(self, code: str) -> Dict[str, Any]:
        """Exchange an authorization code for tokens and the account email"""
        self._require_configured()
        # Google may return the granted scopes in another order or with openid added
        os.environ.setdefault('OAUTHLIB_RELAX_TOKEN_SCOPE', '1')
        flow = self._flow()
        flow.fetch_token(code=code)
        credentials = flow.credentials

        return {
            'access_token': credentials.token,
            'refresh_token': credentials.refresh_token,
            'expires_at': credentials.expiry,
            'scope': ' '.join(credentials.scopes or SCOPES),
            'email': self._fetch_email(credentials)
        }

    def _fetch_email(self, credentials) -> Optional[str]:
        try:
            service = build('oauth2', 'v2', credentials=credentials, cache_discovery=False)
            return service.userinfo().get().execute().get('email')
        except HttpError as e:
            logger.warning(f"Could not read Google account email: {e}")
            return None
