from flask import Flask
from werkzeug.exceptions import HTTPException
from flask_jwt_extended import JWTManager
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.orm.exc import StaleDataError
from dotenv import load_dotenv
from typing import Optional, Dict, Any
import logging
import os

load_dotenv()

db_engine = None
SessionLocal = None
jwt = JWTManager()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'on', 'yes')


def create_app(config: Optional[Dict[str, Any]] = None):
    global db_engine, SessionLocal
    app = Flask(__name__)

    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['DATABASE_URL'] = os.getenv('DATABASE_URL', 'sqlite:///dev.db')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')
    app.config['AUDIT_READ_WINDOW'] = int(os.getenv('AUDIT_READ_WINDOW', '200'))
    app.config['TRACKING_TOKEN_LENGTH'] = int(os.getenv('TRACKING_TOKEN_LENGTH', '12'))
    app.config['PUBLIC_BASE_URL'] = os.getenv('PUBLIC_BASE_URL', '')
    app.config['APP_TZ'] = os.getenv('APP_TZ', 'Africa/Cairo')
    app.config['NOTIFY_DISPATCH_INLINE'] = _env_bool('NOTIFY_DISPATCH_INLINE')
    app.config['NOTIFY_MAX_ATTEMPTS'] = int(os.getenv('NOTIFY_MAX_ATTEMPTS', '5'))
    app.config['PUSH_SENDER'] = os.getenv('PUSH_SENDER') or None

    if config:
        # allow tests or callers to override default config values
        app.config.update(config)

    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    # Database
    db_url = app.config['DATABASE_URL']
    if db_url.endswith(':memory:'):
        # Ensure a single shared in-memory SQLite database across all sessions
        db_engine = create_engine(
            db_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        db_engine = create_engine(db_url, echo=False, future=True)
    SessionLocal = scoped_session(sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False))

    jwt.init_app(app)

    from .routes.iam import iam_bp
    from .routes.departments import dept_bp
    from .routes.repairs import rpr_bp
    from .routes.public import public_bp
    from .routes.notifications import ntf_bp
    app.register_blueprint(iam_bp, url_prefix='/iam')
    app.register_blueprint(dept_bp, url_prefix='/departments')
    app.register_blueprint(rpr_bp, url_prefix='/repairs')
    app.register_blueprint(public_bp, url_prefix='/public')
    app.register_blueprint(ntf_bp, url_prefix='/notifications')

    from .cli import register_cli
    register_cli(app)

    @app.route('/healthz')
    def health():
        return {'status': 'ok'}

    @app.teardown_appcontext
    def remove_session(exc=None):
        if SessionLocal is not None:
            SessionLocal.remove()

    # Unified error handler producing standardized JSON shape
    @app.errorhandler(Exception)
    def handle_errors(e):  # type: ignore
        if SessionLocal is not None:
            SessionLocal().rollback()
        if isinstance(e, StaleDataError):
            from .errors import ConcurrentUpdate
            e = ConcurrentUpdate('Ticket was modified by another request; reload and retry')
        if isinstance(e, HTTPException):
            payload = {
                'error': {
                    'status': e.code,
                    'title': e.name,
                    'detail': e.description,
                    'code': getattr(e, 'error_code', None) or e.name.replace(' ', ''),
                }
            }
            return payload, e.code
        # Unhandled exception
        app.logger.exception('Unhandled exception')
        return {
            'error': {
                'status': 500,
                'title': 'Internal Server Error',
                'detail': 'Unexpected error',
                'code': 'Internal',
            }
        }, 500

    # OpenAPI spec route (minimal)
    from .openapi import build_openapi_spec

    @app.route('/openapi.json')
    def openapi_spec():
        return build_openapi_spec()

    @app.route('/docs')
    def docs_index():
        # Lightweight HTML referencing Redoc CDN (no local install) for quick browsing
        return (
            "<!DOCTYPE html><html><head><title>RepairDesk API</title>"
            "<link rel=\"stylesheet\" href=\"https://cdn.jsdelivr.net/npm/redoc@next/bundles/redoc.standalone.css\" />"
            "</head><body><redoc spec-url='/openapi.json'></redoc>"
            "<script src='https://cdn.jsdelivr.net/npm/redoc@next/bundles/redoc.standalone.js'></script>"
            "</body></html>"
        )

    return app


def get_db():
    return SessionLocal()
