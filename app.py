import logging
import os

from flask import Flask, jsonify
from flask_login import LoginManager
from dotenv import load_dotenv

from models import db, User, Settings
from errors import CRMError

logger = logging.getLogger(__name__)


def _as_bool(value, default=True):
    if value is None:
        return default
    return str(value).strip().lower() not in ('0', 'false', 'no', 'off', '')


def _load_config(app):
    load_dotenv()
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv('DATABASE_URL', 'sqlite:///rechnung_crm.db')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['ARTIFACT_DIR'] = os.getenv('ARTIFACT_DIR') or os.path.join(app.instance_path, 'artifacts')
    app.config['LETTERHEAD_DIR'] = os.getenv('LETTERHEAD_DIR') or os.path.join(app.instance_path, 'letterheads')
    app.config['EINVOICE_PROFILE'] = os.getenv('EINVOICE_PROFILE', 'en16931')
    app.config['EINVOICE_CHECK_XSD'] = _as_bool(os.getenv('EINVOICE_CHECK_XSD'), True)
    app.config['ARTIFACT_REGENERATION'] = os.getenv('ARTIFACT_REGENERATION', 'background')
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')
    app.config['ADMIN_USERNAME'] = os.getenv('ADMIN_USERNAME', 'admin')
    app.config['ADMIN_PASSWORD'] = os.getenv('ADMIN_PASSWORD', 'password123')


def _create_default_admin(app):
    """Create default admin user and settings if no users exist"""
    if User.query.count() > 0:
        return
    admin = User(
        username=app.config['ADMIN_USERNAME'],
        display_name='Administrator',
        is_admin=True,
    )
    admin.set_password(app.config['ADMIN_PASSWORD'])
    db.session.add(admin)
    db.session.flush()
    db.session.add(Settings(owner_id=admin.id, company_name='Mein Unternehmen'))
    db.session.commit()
    logger.info('Created default admin user: %s', admin.username)


def create_app(test_config=None):
    app = Flask(__name__, static_folder=None)
    _load_config(app)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    db.init_app(app)

    # Flask-Login setup
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Bitte melden Sie sich an, um auf diese Seite zuzugreifen.'}), 401

    @app.errorhandler(CRMError)
    def handle_crm_error(exc):
        db.session.rollback()
        if exc.http_status >= 500:
            logger.error('%s: %s', type(exc).__name__, exc)
        return jsonify(exc.to_dict()), exc.http_status

    # Register blueprints
    from blueprints.auth import auth_bp
    from blueprints.companies import companies_bp
    from blueprints.invoices import invoices_bp
    from blueprints.api import api_bp
    from blueprints.settings import settings_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(companies_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(api_bp)
    app.register_blueprint(settings_bp)

    with app.app_context():
        db.create_all()
        _create_default_admin(app)

    return app


if __name__ == '__main__':
    create_app().run(port=5000, debug=False)
