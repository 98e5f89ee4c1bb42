# ============================================
# 錯誤類型
# ============================================
#
# ApiError 系列由 app.py 的 errorhandler 統一轉成 JSON 回應,
# OAuthFlowError 系列由 auth.py 轉成導回前端的 redirect (不會回 5xx 給瀏覽器)


class ApiError(Exception):
    """可以直接回給前端的錯誤 (已知原因)"""
    status_code = 500
    error = 'internal_server_error'

    def __init__(self, message=None, details=None):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details

    def to_dict(self):
        body = {'error': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(ApiError):
    """缺少必填欄位或格式錯誤 → 400"""
    status_code = 400
    error = 'Validation failed'


class MalformedIdentifierError(ValidationError):
    """id 不是 24 碼 hex → 400 (不再讓它變成 500)"""
    error = 'Invalid id'


class UnauthorizedError(ApiError):
    status_code = 401
    error = 'Unauthorized'


class NotFoundError(ApiError):
    """找不到資料,或資料不屬於目前使用者 (一律當作找不到,不洩漏存在與否)"""
    status_code = 404
    error = 'Not found'


# ============================================
# OAuth 流程錯誤
# ============================================

class OAuthFlowError(Exception):
    """
    OAuth 流程中任何一步失敗

    reason 會被附加在導回前端的網址上: {FRONTEND_URL}?error={reason}
    """
    reason = 'auth_failed'

    def __init__(self, message=None, reason=None, description=None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason
        self.description = description


class ProviderDeniedError(OAuthFlowError):
    """Provider 在 callback 帶了 error (例如使用者按了取消)"""
    reason = 'provider_error'


class NoSessionError(OAuthFlowError):
    reason = 'no_session'


class StateMismatchError(OAuthFlowError):
    reason = 'invalid_state'


class TokenExchangeError(OAuthFlowError):
    reason = 'token_exchange_failed'


class ProfileFetchError(OAuthFlowError):
    reason = 'profile_fetch_failed'


class SessionPersistError(OAuthFlowError):
    reason = 'session_error'
