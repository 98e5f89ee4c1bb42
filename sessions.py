from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import wraps
import logging
import secrets

from flask import current_app, g, request
from sqlalchemy.exc import SQLAlchemyError

from models import db, Identity, SessionRecord

logger = logging.getLogger(__name__)

USER_ID_KEY = 'userId'
OAUTH_STATE_KEY = 'oauthState'

# ============================================
# Session / RequestContext 值物件
# ============================================

@dataclass(frozen=True)
class Session:
    """
    一個 server-side session 的快照

    不可變:要改內容就用下面的 bind_identity / with_oauth_state 等函數拿一個新的,
    再交給 SessionStore.set() 寫回去
    """
    id: str
    data: dict = field(default_factory=dict)
    expires_at: datetime = None
    updated_at: datetime = None
    is_new: bool = False
    modified: bool = False

    @property
    def user_id(self):
        return self.data.get(USER_ID_KEY)

    def oauth_state(self, provider):
        return (self.data.get(OAUTH_STATE_KEY) or {}).get(provider)


@dataclass(frozen=True)
class RequestContext:
    """每個 handler 收到的明確 context (不從 global 拿使用者)"""
    session_id: str
    identity: Identity = None
    session: Session = None

    @property
    def is_authenticated(self):
        return self.identity is not None


def new_session():
    return Session(id=secrets.token_urlsafe(32), is_new=True)


def _with_data(session, data):
    return replace(session, data=data, modified=True)


def bind_identity(session, identity_id):
    """登入:把 identity 綁到 session 上"""
    data = dict(session.data)
    data[USER_ID_KEY] = identity_id
    return _with_data(session, data)


def unbind_identity(session):
    """登出:把 identity 從 session 拿掉"""
    data = dict(session.data)
    data.pop(USER_ID_KEY, None)
    return _with_data(session, data)


def with_oauth_state(session, provider, state):
    data = dict(session.data)
    states = dict(data.get(OAUTH_STATE_KEY) or {})
    states[provider] = state
    data[OAUTH_STATE_KEY] = states
    return _with_data(session, data)


def clear_oauth_state(session, provider):
    data = dict(session.data)
    states = dict(data.get(OAUTH_STATE_KEY) or {})
    states.pop(provider, None)
    if states:
        data[OAUTH_STATE_KEY] = states
    else:
        data.pop(OAUTH_STATE_KEY, None)
    return _with_data(session, data)

# ============================================
# SessionStore (session_record 資料表)
# ============================================

class SessionStore:
    """
    以 session id 為 key 的 session 儲存

    get / set / destroy / touch 都是單筆讀寫,每次操作自己 commit
    """

    def __init__(self, ttl, touch_after):
        self.ttl = ttl
        self.touch_after = touch_after

    def get(self, session_id, now=None):
        """取得 session,不存在或已過期回傳 None (過期的順便刪掉)"""
        if not session_id:
            return None

        now = now or datetime.utcnow()
        record = db.session.get(SessionRecord, session_id)
        if record is None:
            return None

        if record.expires_at <= now:
            logger.debug(f"Session expired: {session_id[:8]}")
            self.destroy(session_id)
            return None

        return Session(
            id=record.id,
            data=dict(record.data or {}),
            expires_at=record.expires_at,
            updated_at=record.updated_at
        )

    def set(self, session, now=None):
        """
        寫入 session 並延長 expiry

        寫入失敗會 rollback 後把 SQLAlchemyError 往上丟,由呼叫端決定怎麼處理
        """
        now = now or datetime.utcnow()
        expires_at = now + self.ttl

        try:
            record = db.session.get(SessionRecord, session.id)
            created = record is None
            if created:
                record = SessionRecord(id=session.id)
                db.session.add(record)

            record.data = dict(session.data)
            record.expires_at = expires_at
            record.updated_at = now
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.debug(f"Session {'created' if created else 'updated'}: {session.id[:8]}")

        return replace(
            session,
            expires_at=expires_at,
            updated_at=now,
            is_new=False,
            modified=False
        )

    def touch(self, session, now=None):
        """距離上次寫入超過 touch_after 才延長 expiry"""
        now = now or datetime.utcnow()
        if session.updated_at and now - session.updated_at < self.touch_after:
            return session

        expires_at = now + self.ttl
        try:
            updated = SessionRecord.query.filter_by(id=session.id).update(
                {'expires_at': expires_at, 'updated_at': now}
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        if not updated:
            return session

        logger.debug(f"Session touched: {session.id[:8]}")
        return replace(session, expires_at=expires_at, updated_at=now)

    def destroy(self, session_id):
        try:
            SessionRecord.query.filter_by(id=session_id).delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.debug(f"Session destroyed: {session_id[:8]}")

    def purge_expired(self, now=None):
        """刪掉所有過期的 session,回傳刪除筆數"""
        now = now or datetime.utcnow()
        try:
            count = SessionRecord.query.filter(SessionRecord.expires_at <= now).delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info(f"Purged {count} expired sessions")
        return count

# ============================================
# Session Middleware
# ============================================

def get_session_store():
    return current_app.extensions['session_store']


def _load_identity(session):
    """
    依 session 上的 userId 找 identity

    identity 已經不存在 (被手動刪掉) 就解除綁定,讓這個 session 變回未登入
    """
    if not session.user_id:
        return session, None

    identity = db.session.get(Identity, session.user_id)
    if identity is None:
        logger.warning(f"Session {session.id[:8]} bound to missing identity {session.user_id}")
        return unbind_identity(session), None

    return session, identity


def load_request_session():
    """before_request:從 cookie 載入 session,沒有就建立一個新的"""
    if request.method == 'OPTIONS':
        return
    if request.path in current_app.config.get('SESSION_EXEMPT_PATHS', ()):
        return

    store = get_session_store()
    session_id = request.cookies.get(current_app.config['SESSION_ID_COOKIE_NAME'])
    session = store.get(session_id) if session_id else None
    if session is None:
        session = new_session()

    session, identity = _load_identity(session)
    g.request_session = session
    g.request_identity = identity


def save_request_session(response):
    """after_request:新的或改過的 session 寫回 store,並設定 cookie"""
    config = current_app.config
    cookie_name = config['SESSION_ID_COOKIE_NAME']

    if g.pop('clear_session_cookie', False):
        response.delete_cookie(
            cookie_name,
            path='/',
            domain=config.get('SESSION_COOKIE_DOMAIN'),
            secure=config['SESSION_COOKIE_SECURE'],
            samesite=config['SESSION_COOKIE_SAMESITE']
        )
        return response

    session = g.get('request_session')
    if session is None:
        return response

    store = get_session_store()
    try:
        if session.is_new or session.modified:
            session = store.set(session)
        else:
            session = store.touch(session)
    except SQLAlchemyError as e:
        # 回應本身已經產生了,session 寫不進去只能記錄下來
        logger.error(f"Session save error for {session.id[:8]}: {str(e)}", exc_info=True)
        return response

    response.set_cookie(
        cookie_name,
        session.id,
        max_age=int(store.ttl.total_seconds()),
        path='/',
        domain=config.get('SESSION_COOKIE_DOMAIN'),
        secure=config['SESSION_COOKIE_SECURE'],
        httponly=config['SESSION_COOKIE_HTTPONLY'],
        samesite=config['SESSION_COOKIE_SAMESITE']
    )
    return response


def init_sessions(app, store=None):
    """註冊 session middleware 並把 store 放到 app.extensions"""
    if store is None:
        store = SessionStore(
            ttl=app.config['SESSION_TTL'],
            touch_after=app.config['SESSION_TOUCH_AFTER']
        )
    app.config.setdefault('SESSION_EXEMPT_PATHS', ('/health',))
    app.extensions['session_store'] = store
    app.before_request(load_request_session)
    app.after_request(save_request_session)
    return store


def replace_session(session):
    """handler 已經自己寫入新的 session 時,用這個讓 after_request 不要蓋掉它"""
    g.request_session = session


def end_session():
    """session 已經 destroy,回應時清掉 cookie"""
    g.request_session = None
    g.request_identity = None
    g.clear_session_cookie = True


def with_context(view):
    """
    把 RequestContext 當作第一個參數傳給 view

    用法:
        @projects_bp.route('/projects', methods=['POST'])
        @with_context
        def create_project(ctx):
            ...
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        session = g.get('request_session')
        ctx = RequestContext(
            session_id=session.id if session else None,
            identity=g.get('request_identity'),
            session=session
        )
        return view(ctx, *args, **kwargs)
    return wrapper
