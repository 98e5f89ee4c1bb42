from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlencode
import hmac
import logging
import secrets

import requests
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import (
    NoSessionError,
    ProfileFetchError,
    ProviderDeniedError,
    SessionPersistError,
    StateMismatchError,
    TokenExchangeError,
)
from models import db, Identity
from sessions import bind_identity, clear_oauth_state, with_oauth_state

logger = logging.getLogger(__name__)

# ============================================
# Provider 設定
# ============================================

@dataclass(frozen=True)
class ProviderProfile:
    """provider userinfo 正規化之後的結果"""
    subject: str
    name: str = None
    email: str = None
    picture: str = None


def _google_profile(data):
    return ProviderProfile(
        subject=data.get('sub'),
        name=data.get('name'),
        email=data.get('email'),
        picture=data.get('picture')
    )


def _github_profile(data):
    # GitHub 的 id 是數字,name 可能是空的 (沒設定顯示名稱)
    subject = data.get('id')
    return ProviderProfile(
        subject=str(subject) if subject is not None else None,
        name=data.get('name') or data.get('login'),
        email=data.get('email'),
        picture=data.get('avatar_url')
    )


def _linkedin_profile(data):
    return ProviderProfile(
        subject=data.get('sub'),
        name=data.get('name'),
        email=data.get('email'),
        picture=data.get('picture')
    )


class OAuthProvider:
    """一個 OAuth2 authorization-code provider 的端點與憑證"""

    def __init__(self, name, authorize_url, token_url, profile_url, scope,
                 client_id, client_secret, redirect_uri, profile_parser,
                 profile_headers=None):
        self.name = name
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.profile_url = profile_url
        self.scope = scope
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.profile_parser = profile_parser
        self.profile_headers = profile_headers or {}

    def authorization_url(self, state):
        query = urlencode({
            'response_type': 'code',
            'client_id': self.client_id,
            'redirect_uri': self.redirect_uri,
            'state': state,
            'scope': self.scope
        })
        return f'{self.authorize_url}?{query}'


def build_providers(config):
    """
    依設定建立 provider 表

    沒有設定 client id 的 provider 不會出現在表裡 (路由會回 404)
    """
    base_url = config['BASE_URL']

    def redirect_uri(name):
        return config.get(f'{name.upper()}_REDIRECT_URI') or f'{base_url}/auth/{name}/callback'

    candidates = [
        OAuthProvider(
            name='google',
            authorize_url='https://accounts.google.com/o/oauth2/v2/auth',
            token_url='https://oauth2.googleapis.com/token',
            profile_url='https://openidconnect.googleapis.com/v1/userinfo',
            scope='openid profile email',
            client_id=config.get('GOOGLE_CLIENT_ID'),
            client_secret=config.get('GOOGLE_CLIENT_SECRET'),
            redirect_uri=redirect_uri('google'),
            profile_parser=_google_profile
        ),
        OAuthProvider(
            name='github',
            authorize_url='https://github.com/login/oauth/authorize',
            token_url='https://github.com/login/oauth/access_token',
            profile_url='https://api.github.com/user',
            scope='read:user user:email',
            client_id=config.get('GITHUB_CLIENT_ID'),
            client_secret=config.get('GITHUB_CLIENT_SECRET'),
            redirect_uri=redirect_uri('github'),
            profile_parser=_github_profile,
            profile_headers={'Accept': 'application/vnd.github+json'}
        ),
        OAuthProvider(
            name='linkedin',
            authorize_url='https://www.linkedin.com/oauth/v2/authorization',
            token_url='https://www.linkedin.com/oauth/v2/accessToken',
            profile_url='https://api.linkedin.com/v2/userinfo',
            scope='openid profile email',
            client_id=config.get('LINKEDIN_CLIENT_ID'),
            client_secret=config.get('LINKEDIN_CLIENT_SECRET'),
            redirect_uri=redirect_uri('linkedin'),
            profile_parser=_linkedin_profile,
            profile_headers={'X-Restli-Protocol-Version': '2.0.0'}
        ),
    ]

    return {p.name: p for p in candidates if p.client_id}

# ============================================
# Identity upsert
# ============================================

def _apply_profile(identity, profile, now):
    identity.name = profile.name
    identity.email = profile.email
    # provider 沒給頭像就保留舊的
    identity.profile_picture = profile.picture or identity.profile_picture or ''
    identity.last_login = now


def upsert_identity(platform, profile, now=None):
    """
    依 (social_id, platform) 建立或更新 identity

    兩個 callback 同時替同一個新帳號建立資料時,後到的會撞到 unique constraint,
    這時改成讀出先寫入的那筆再更新
    """
    now = now or datetime.utcnow()
    identity = Identity.query.filter_by(social_id=profile.subject, platform=platform).first()

    if identity is not None:
        _apply_profile(identity, profile, now)
        db.session.commit()
        return identity

    identity = Identity(
        social_id=profile.subject,
        platform=platform,
        created_at=now
    )
    _apply_profile(identity, profile, now)
    db.session.add(identity)

    try:
        db.session.commit()
        logger.info(f"New identity created: {platform}:{profile.subject}")
        return identity
    except IntegrityError:
        db.session.rollback()
        logger.warning(f"Concurrent first login for {platform}:{profile.subject}, using existing identity")

    identity = Identity.query.filter_by(social_id=profile.subject, platform=platform).one()
    _apply_profile(identity, profile, now)
    db.session.commit()
    return identity

# ============================================
# OAuth Exchange (authorization-code + state 驗證)
# ============================================

class OAuthExchange:
    """
    把 provider 的 callback 轉成綁在 session 上、已驗證的 identity

    流程:
        IDLE → STATE_ISSUED (initiate)
             → CODE_RECEIVED → TOKEN_EXCHANGED → PROFILE_FETCHED → IDENTITY_BOUND (callback)

    任何一步失敗都丟 OAuthFlowError 的子類別,由 auth blueprint 轉成導回前端的 redirect。
    不做任何重試:authorization code 只能用一次,失敗就要使用者重新走 initiate。
    """

    def __init__(self, store, providers, timeout=10):
        self.store = store
        self.providers = providers
        self.timeout = timeout

    def supports(self, provider):
        return provider in self.providers

    def initiate(self, provider, session):
        """
        產生 state、寫入 session、回傳 (已寫入的 session, 授權網址)

        callback 可能打到另一個 process,只能相信已經寫進 store 的 state,
        所以一定要寫入並讀回確認後才能 redirect
        """
        client = self.providers[provider]
        state = secrets.token_hex(16)

        try:
            saved = self.store.set(with_oauth_state(session, provider, state))
            stored = self.store.get(saved.id)
        except SQLAlchemyError as e:
            raise SessionPersistError(f'Failed to persist {provider} state: {e}') from e

        if stored is None or stored.oauth_state(provider) != state:
            raise SessionPersistError(f'{provider} state was not persisted')

        logger.info(f"{provider} auth initiated for session {saved.id[:8]} (state {state[:6]}...)")
        return saved, client.authorization_url(state)

    def callback(self, provider, query, session_id):
        """
        處理 provider callback,回傳 (已寫入的 session, identity)

        query 是 callback 的 query string (code, state, error, error_description)
        session 一律用 session_id 重新從 store 讀,不信任 request 裡的記憶體副本
        """
        client = self.providers[provider]

        # 1. provider 回報錯誤 (例如使用者拒絕授權),不檢查 state
        error = query.get('error')
        if error:
            raise ProviderDeniedError(
                f'{provider} returned error: {error}',
                reason=error,
                description=query.get('error_description') or ''
            )

        # 2. 沒有 session 就沒有 state 可以比對
        session = self.store.get(session_id)
        if session is None:
            raise NoSessionError(f'No session found in {provider} callback')

        # 3. CSRF 防護:state 必須完全等於 initiate 時存的那個
        expected = session.oauth_state(provider)
        received = query.get('state')
        if not expected or not received or not hmac.compare_digest(
            str(expected).encode('utf-8'), str(received).encode('utf-8')
        ):
            raise StateMismatchError(f'{provider} state mismatch for session {session.id[:8]}')

        # 4. code 換 access token
        access_token = self._exchange_code(client, query.get('code'))

        # 5. 取得使用者資料
        profile = self._fetch_profile(client, access_token)

        # 6. 建立或更新 identity
        identity = upsert_identity(provider, profile)

        # 7. 綁定 session,state 用完即丟
        bound = bind_identity(clear_oauth_state(session, provider), identity.id)
        try:
            saved = self.store.set(bound)
        except SQLAlchemyError as e:
            raise SessionPersistError(f'Failed to persist login session: {e}') from e

        logger.info(f"{provider} authentication successful for identity {identity.id}")
        return saved, identity

    def _exchange_code(self, client, code):
        if not code:
            raise TokenExchangeError(f'{client.name} callback missing code')

        try:
            response = requests.post(
                client.token_url,
                data={
                    'grant_type': 'authorization_code',
                    'code': code,
                    'redirect_uri': client.redirect_uri,
                    'client_id': client.client_id,
                    'client_secret': client.client_secret
                },
                headers={'Accept': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
            token_data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TokenExchangeError(f'{client.name} token exchange failed: {e}') from e

        # GitHub 換失敗時是 200 + {"error": ...}
        access_token = token_data.get('access_token') if isinstance(token_data, dict) else None
        if not access_token:
            raise TokenExchangeError(f'{client.name} token response missing access_token')
        return access_token

    def _fetch_profile(self, client, access_token):
        headers = {'Authorization': f'Bearer {access_token}'}
        headers.update(client.profile_headers)

        try:
            response = requests.get(client.profile_url, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise ProfileFetchError(f'{client.name} profile fetch failed: {e}') from e

        if not isinstance(data, dict):
            raise ProfileFetchError(f'{client.name} profile response is not an object')

        profile = client.profile_parser(data)
        if not profile.subject:
            raise ProfileFetchError(f'{client.name} profile missing subject id')
        return profile
