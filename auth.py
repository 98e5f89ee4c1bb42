from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, redirect, request
from sqlalchemy.exc import SQLAlchemyError
import logging

from errors import NotFoundError, OAuthFlowError, UnauthorizedError
from extensions import limiter
from models import db
from sessions import end_session, get_session_store, replace_session, with_context

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Helper Functions
# ============================================

def get_oauth_exchange():
    return current_app.extensions['oauth_exchange']


def frontend_redirect(path='', **params):
    """導回前端,None 的參數不會出現在網址上"""
    url = f"{current_app.config['FRONTEND_URL']}{path}"
    query = {k: v for k, v in params.items() if v is not None}
    if query:
        url = f'{url}?{urlencode(query)}'
    return redirect(url)


def _require_provider(provider):
    exchange = get_oauth_exchange()
    if not exchange.supports(provider):
        raise NotFoundError(f'Unknown auth provider: {provider}')
    return exchange

# ============================================
# OAuth 登入
# ============================================

@auth_bp.route('/auth/<provider>', methods=['GET'])
@limiter.limit('30 per minute')
@with_context
def oauth_login(ctx, provider):
    """
    開始 OAuth 流程

    state 寫進 session store 成功之後才導去 provider,寫不進去就直接導回前端
    """
    exchange = _require_provider(provider)

    try:
        session, auth_url = exchange.initiate(provider, ctx.session)
    except OAuthFlowError as e:
        logger.error(f"{provider} auth initialization error: {str(e)}")
        return frontend_redirect(error='auth_init_failed')

    replace_session(session)
    return redirect(auth_url)


@auth_bp.route('/auth/<provider>/callback', methods=['GET'])
@with_context
def oauth_callback(ctx, provider):
    """
    Provider 導回來的 callback

    所有失敗都導回前端並帶上 error 代碼,不回 5xx 給瀏覽器
    """
    exchange = _require_provider(provider)

    try:
        session, identity = exchange.callback(provider, request.args, ctx.session_id)
    except OAuthFlowError as e:
        logger.warning(f"{provider} OAuth flow failed ({e.reason}): {str(e)}")
        return frontend_redirect(error=e.reason, description=e.description)
    except Exception as e:
        db.session.rollback()
        logger.error(f"{provider} auth error: {str(e)}", exc_info=True)
        return frontend_redirect(error='auth_failed')

    replace_session(session)
    return frontend_redirect('/profile')

# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/profile', methods=['GET'])
@with_context
def get_profile(ctx):
    if not ctx.is_authenticated:
        raise UnauthorizedError()

    return jsonify(ctx.identity.to_profile()), 200

# ============================================
# 登出
# ============================================

@auth_bp.route('/logout', methods=['GET'])
@with_context
def logout(ctx):
    """登出:刪掉 server-side session 並清掉 cookie"""
    if ctx.session is not None and not ctx.session.is_new:
        try:
            get_session_store().destroy(ctx.session_id)
        except SQLAlchemyError as e:
            logger.error(f"Error destroying session: {str(e)}", exc_info=True)
            return jsonify({'error': 'Session destroy error'}), 500

    if ctx.identity is not None:
        logger.info(f"User logged out: {ctx.identity.platform}:{ctx.identity.social_id}")

    end_session()
    return jsonify({'message': 'Logged out successfully'}), 200
