from flask import Flask, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dataclasses import replace
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os

from config import get_config
from errors import ApiError
from extensions import cors, limiter
from models import db
from oauth import OAuthExchange, build_providers
from sessions import get_session_store, init_sessions, replace_session, with_context

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 模組 logger (logging.getLogger(__name__)) 也寫進同樣的檔案
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

    level = getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO)
    app.logger.setLevel(level)

    info_path = os.path.abspath(os.path.join(log_dir, 'app.log'))
    error_path = os.path.abspath(os.path.join(log_dir, 'error.log'))

    root = logging.getLogger()
    root.setLevel(level)

    # 同一個 process 再呼叫一次 create_app 時,handler 已經掛在 root 上了
    attached = {getattr(handler, 'baseFilename', None) for handler in root.handlers}
    if info_path in attached and error_path in attached:
        return

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    info_handler = RotatingFileHandler(
        info_path,
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        error_path,
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root.addHandler(info_handler)
    root.addHandler(error_handler)

    app.logger.info('Application startup')

# ============================================
# 錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        """已知的錯誤 (400 / 401 / 404) 直接回給前端"""
        if error.status_code >= 500:
            app.logger.error(f"API error: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid',
            'status': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        最後的防線,捕捉所有沒被處理的 exception

        錯誤細節只在 development 環境回給前端,其他環境只寫進 log
        """
        if isinstance(error, HTTPException):
            return error

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        body = {'error': 'Something went wrong!'}
        if app.config.get('ENV') == 'development':
            body['message'] = str(error)
        return jsonify(body), 500

# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

# ============================================
# 一般路由 (health / 首頁 / debug)
# ============================================

def register_routes(app):

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """
        健康檢查端點

        用於 load balancer 或監控系統檢查服務是否正常
        """
        try:
            db.session.execute(text('SELECT 1'))
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

        return jsonify({
            'status': 'healthy',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat()
        }), 200

    @app.route('/')
    def home():
        return jsonify({
            'message': 'Project Tracker API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'login': {'path': '/auth/:provider', 'methods': ['GET']},
                    'callback': {'path': '/auth/:provider/callback', 'methods': ['GET']},
                    'providers': sorted(app.extensions['oauth_exchange'].providers)
                },
                'profile': {'path': '/profile', 'methods': ['GET']},
                'logout': {'path': '/logout', 'methods': ['GET']},
                'projects': {
                    'list': {'path': '/api/projects', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/api/projects/:id', 'methods': ['GET', 'PUT', 'DELETE']}
                },
                'tasks': {
                    'list': {'path': '/api/tasks', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/api/tasks/:id', 'methods': ['GET', 'PUT', 'DELETE']}
                }
            }
        })

    if app.debug:
        @app.route('/debug/routes')
        def debug_routes():
            """列出所有註冊的路由 (僅開發環境)"""
            routes = []
            for rule in app.url_map.iter_rules():
                routes.append({
                    'endpoint': rule.endpoint,
                    'methods': sorted(rule.methods),
                    'path': str(rule)
                })
            return jsonify({'routes': routes})

        @app.route('/test-session')
        @with_context
        def test_session(ctx):
            """寫一個測試值進 session 並立刻寫入 store (僅開發環境)"""
            data = dict(ctx.session.data)
            data['testData'] = 'test'
            session = get_session_store().set(replace(ctx.session, data=data))
            replace_session(session)
            return jsonify({'sessionID': session.id, 'sessionData': session.data})

    @app.cli.command('purge-sessions')
    def purge_sessions():
        """刪掉所有過期的 session"""
        count = get_session_store().purge_expired()
        print(f'Purged {count} expired sessions')

# ============================================
# Application Factory
# ============================================

def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or get_config())

    # 前面有一層 reverse proxy,讓 remote_addr / scheme 正確
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['PROXY_FIX_X_FOR'], x_proto=1)

    if not app.debug and not app.testing:
        setup_logging(app)

    # CORS: credentials 模式一定要指定來源
    origins = [app.config['FRONTEND_URL']] + list(app.config['CORS_ORIGINS'])
    cors.init_app(
        app,
        supports_credentials=True,
        origins=origins,
        methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    db.init_app(app)
    limiter.init_app(app)

    with app.app_context():
        db.create_all()
        app.logger.info('Database tables created')

    register_request_hooks(app)
    store = init_sessions(app)

    app.extensions['oauth_exchange'] = OAuthExchange(
        store=store,
        providers=build_providers(app.config),
        timeout=app.config['OAUTH_HTTP_TIMEOUT']
    )

    from auth import auth_bp
    app.register_blueprint(auth_bp)

    from projects import projects_bp
    app.register_blueprint(projects_bp, url_prefix='/api')

    from tasks import tasks_bp
    app.register_blueprint(tasks_bp, url_prefix='/api')

    register_error_handlers(app)
    register_routes(app)

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server
    # 應該用 gunicorn: gunicorn "app:create_app()"
    config_class = get_config()
    config_class.validate()

    app = create_app(config_class)
    port = int(os.getenv('PORT', 5000))

    app.logger.info(f"Frontend URL: {app.config['FRONTEND_URL']}")
    app.logger.info(f"Base URL: {app.config['BASE_URL']}")

    app.run(
        debug=app.debug,
        port=port,
        host='0.0.0.0'
    )
