import itertools
from datetime import datetime, timedelta

import pytest

import lifecycle
from app import create_app
from models import db, User, Team

NOW = datetime(2026, 5, 1, 18, 0)


@pytest.fixture
def flask_app():
    """Create test application with in-memory SQLite database"""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SECRET_KEY': 'test-secret-key',
            'MAIL_SERVER': None,
            'NOTIFICATION_CHANNELS': ('database',),
            'REMINDER_CHANNELS': ('mail', 'database'),
        }
    )

    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    """Test client"""
    return flask_app.test_client()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_user(flask_app):
    counter = itertools.count(1)

    def _make(name=None):
        n = next(counter)
        user = User(
            name=name or f'Player {n}',
            username=f'player{n}',
            email=f'player{n}@example.com',
        )
        user.set_password('Secret@123')
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def make_team(flask_app):
    def _make(name, captain, players=(), co_captains=(), variant='football_7'):
        team = Team(name=name, variant=variant, created_by=captain.id)
        db.session.add(team)
        db.session.flush()
        team.add_member(captain, role='captain')
        for user in co_captains:
            team.add_member(user, role='co_captain')
        for user in players:
            team.add_member(user)
        db.session.commit()
        return team

    return _make


@pytest.fixture
def home_captain(make_user):
    return make_user('Hannah Home')


@pytest.fixture
def away_captain(make_user):
    return make_user('Arlo Away')


@pytest.fixture
def third_captain(make_user):
    return make_user('Tess Third')


@pytest.fixture
def outsider(make_user):
    return make_user('Oscar Outsider')


@pytest.fixture
def home_players(make_user):
    return [make_user('Hugo Home'), make_user('Hedda Home')]


@pytest.fixture
def away_players(make_user):
    return [make_user('Ada Away')]


@pytest.fixture
def home_team(make_team, home_captain, home_players):
    return make_team('Harbour Rovers', home_captain, players=home_players)


@pytest.fixture
def away_team(make_team, away_captain, away_players):
    return make_team('Albion Athletic', away_captain, players=away_players)


@pytest.fixture
def third_team(make_team, third_captain):
    return make_team('Thornbury Town', third_captain)


@pytest.fixture
def open_match(home_team, home_captain, now):
    """An available slot three days out, published by the home team."""
    return lifecycle.create_match(
        home_captain,
        home_team.id,
        {'scheduled_at': (now + timedelta(days=3)).isoformat(), 'location': 'Riverside Park'},
        now=now,
    )


@pytest.fixture
def confirmed_match(open_match, away_team, away_captain, home_captain, now):
    match_request = lifecycle.create_request(away_captain, open_match.id, away_team.id, now=now)
    return lifecycle.accept_request(home_captain, match_request.id, now=now)


@pytest.fixture
def login_as(client):
    """Put a user id into the test client's session."""

    def _login(user):
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
            sess['username'] = user.username
        return client

    return _login
