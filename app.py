import logging
import os

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

import dispatch
from blueprints import auth_bp, matches_bp, requests_bp, notifications_bp, team_bp
from blueprints.auth import load_current_user
from errors import MatchdayError
from models import db, User, current_time, enable_sqlite_savepoints
from reminders import send_availability_reminders

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = 'true') -> bool:
    return os.environ.get(name, default).lower() in {'1', 'true', 'yes'}


def _env_channels(name: str, default: str) -> tuple:
    return tuple(part.strip() for part in os.environ.get(name, default).split(',') if part.strip())


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    if not database_url:
        return None
    # Heroku PostgreSQL URL fix (postgres:// → postgresql://)
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


def create_app(test_config=None):
    app = Flask(__name__)

    # Configuration
    app.config.from_mapping(
        SECRET_KEY=os.environ.get('SECRET_KEY', 'matchday'),
        SQLALCHEMY_DATABASE_URI=_database_url(),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        APP_TIMEZONE=os.environ.get('APP_TIMEZONE', 'UTC'),
        APP_BASE_URL=os.environ.get('APP_BASE_URL', ''),
        LOG_LEVEL=os.environ.get('LOG_LEVEL', 'INFO'),
        MAIL_SERVER=os.environ.get('MAIL_SERVER'),
        MAIL_PORT=int(os.environ.get('MAIL_PORT', '587')),
        MAIL_USERNAME=os.environ.get('MAIL_USERNAME'),
        MAIL_PASSWORD=os.environ.get('MAIL_PASSWORD'),
        MAIL_USE_TLS=_env_flag('MAIL_USE_TLS'),
        MAIL_SENDER=os.environ.get('MAIL_SENDER'),
        NOTIFICATION_CHANNELS=_env_channels('NOTIFICATION_CHANNELS', 'database'),
        REMINDER_CHANNELS=_env_channels('REMINDER_CHANNELS', 'mail,database'),
    )
    if test_config:
        app.config.update(test_config)

    if not app.config['SQLALCHEMY_DATABASE_URI']:
        # Fallback to SQLite for local development
        default_sqlite_dir = os.path.join(BASE_DIR, 'instance')
        os.makedirs(default_sqlite_dir, exist_ok=True)
        sqlite_path = os.environ.get('SQLITE_PATH', os.path.join(default_sqlite_dir, 'matchday.db'))
        app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{sqlite_path}'

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql'):
        app.config.setdefault('SQLALCHEMY_ENGINE_OPTIONS', {'pool_pre_ping': True, 'pool_recycle': 300})

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    db.init_app(app)

    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            enable_sqlite_savepoints(db.engine)
        db.create_all()

    # Register blueprints
    app.register_blueprint(auth_bp)
    app.register_blueprint(team_bp)
    app.register_blueprint(matches_bp)
    app.register_blueprint(requests_bp)
    app.register_blueprint(notifications_bp)

    @app.before_request
    def before_request():
        """Load current user before every request to ANY route"""
        load_current_user()

    @app.errorhandler(MatchdayError)
    def handle_domain_error(exc):
        db.session.rollback()
        logger.info('%s: %s', type(exc).__name__, exc.message)
        return jsonify({'error': exc.message}), exc.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({'error': exc.description}), exc.code

    register_commands(app)
    return app


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create database tables."""
        db.create_all()
        click.echo('Database initialized successfully!')

    @app.cli.command('send-availability-reminders')
    def send_reminders_command():
        """Send 48-hour availability reminders (run every 30 minutes)."""
        summary = send_availability_reminders(now=current_time())
        if summary['skipped']:
            click.echo('Another reminder run is still active; skipped.')
            return
        click.echo(
            f"Sent {summary['sent']} reminders for {summary['matches']} matches "
            f"({summary['failed']} failed)."
        )

    @app.cli.command('create-test-notification')
    @click.argument('email')
    def create_test_notification_command(email):
        """Drop a test notification into a user's feed."""
        user = User.query.filter_by(email=email).first()
        if user is None:
            raise click.ClickException(f'User with email {email} not found')
        dispatch.notify_users([user], dispatch.sample_event(now=current_time()))
        click.echo(f'Test notification created for {user.name}.')


if __name__ == "__main__":
    create_app().run(debug=True, port=5000)
