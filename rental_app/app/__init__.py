import logging
from pathlib import Path

from flask import Flask, jsonify, request, session, current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf import CSRFProtect
from flask_wtf.csrf import CSRFError
from flask_babel import Babel, gettext as _
from werkzeug.exceptions import HTTPException
from .config import Config

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
babel = Babel()

LOG_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'


def get_locale():
    # explicit choice stored by POST /api/language, else Accept-Language
    languages = list(current_app.config.get("LANGUAGES", ("it", "en")))
    if session.get('lang') in languages:
        return session['lang']
    return request.accept_languages.best_match(languages)


def configure_logging(app: Flask) -> None:
    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    app.logger.setLevel(level)
    # create_app runs once per scheduled job: attach the stream handler only once
    if not any(getattr(h, "_rental_handler", False) for h in app.logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._rental_handler = True  # type: ignore[attr-defined]
        app.logger.addHandler(handler)


def _ensure_sqlite_dir(app: Flask) -> None:
    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if not db_uri.startswith("sqlite:") or "///" not in db_uri or ":memory:" in db_uri:
        return
    parent = Path(db_uri.split("///", 1)[1]).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        app.logger.warning("Could not create directory %s for the SQLite database", parent)


def register_error_handlers(app: Flask) -> None:
    """Every error leaves the API as JSON ``{"message": ...}``."""

    @app.errorhandler(CSRFError)
    def handle_csrf_error(exc):
        return jsonify({"message": exc.description}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        # redirects (e.g. trailing slash) are not errors
        if exc.code is None or exc.code < 400:
            return exc
        return jsonify({"message": exc.description or exc.name}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": _("Internal server error")}), 500


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(config or Config)
    configure_logging(app)
    _ensure_sqlite_dir(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    babel.init_app(app, locale_selector=get_locale)

    from .models import User

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            return db.session.get(User, int(user_id))
        except (TypeError, ValueError):
            return None

    # JSON API: answer 401 instead of redirecting to a login page
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"message": _("Authentication required")}), 401

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        # responses carry secrets and backup codes
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_error_handlers(app)

    # ヘルスチェックエンドポイント: Kubernetes の readiness/liveness probe 用
    @app.route("/health", methods=["GET"])
    def health_check():
        return ("OK", 200)

    from .auth.routes import auth_bp
    from .auth.two_factor import two_factor_bp
    from .admin.routes import admin_bp

    for blueprint in (auth_bp, two_factor_bp, admin_bp):
        app.register_blueprint(blueprint)

    from .cli import scheduler_cli, users_cli, two_factor_cli

    for group in (scheduler_cli, users_cli, two_factor_cli):
        app.cli.add_command(group)

    return app
