import logging
import time

from dotenv import load_dotenv
load_dotenv()

from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix
from .config import Config
from .models import db
from .services.context import EXTENSION_KEY, build_context
from flask_migrate import Migrate


def create_app(overrides: dict | None = None, clock=None):
    """Build the service; raises ConfigurationError when the token secret is missing."""
    app = Flask(__name__)
    app.config.from_object(Config())
    if overrides:
        app.config.update(overrides)
    logging.basicConfig(level=app.config.get('LOG_LEVEL', 'INFO'),
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    db.init_app(app)
    Migrate(app, db)
    # Trust reverse proxy headers (Render/Heroku)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # fail at startup, not per request, when the token secret is missing
    app.extensions[EXTENSION_KEY] = build_context(app.config, clock=clock or time.time)

    with app.app_context():
        db.create_all()

    from .routes_api import bp as api_bp
    from .routes_admin import bp as admin_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/admin')

    @app.get('/health')
    def health():
        return {'ok': True}

    return app
