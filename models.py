from datetime import datetime, timedelta

import pytz
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, or_, text
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

from errors import ValidationError

db = SQLAlchemy()

MATCH_VARIANTS = ('football_11', 'football_7', 'football_5', 'futsal')
MATCH_TYPES = ('friendly', 'competitive')
MATCH_STATUSES = ('available', 'pending', 'confirmed', 'in_progress', 'completed', 'cancelled')
OPEN_MATCH_STATUSES = ('available', 'pending')
TERMINAL_MATCH_STATUSES = ('completed', 'cancelled')
REQUEST_STATUSES = ('pending', 'accepted', 'rejected')
AVAILABILITY_STATUSES = ('pending', 'available', 'maybe', 'unavailable')
MEMBER_ROLES = ('captain', 'co_captain', 'player')
LEADER_ROLES = ('captain', 'co_captain')
LINEUP_STATUSES = ('confirmed', 'in_progress')
LINEUP_POSITIONS = ('goalkeeper', 'defender', 'midfielder', 'forward')
EVENT_TYPES = ('goal', 'assist', 'yellow_card', 'red_card', 'substitution_in', 'substitution_out')

MINIMUM_PLAYERS = {
    'football_11': 11,
    'football_7': 7,
    'football_5': 5,
    'futsal': 5,
}


def current_time():
    """Naive UTC timestamp; every column stores UTC."""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def to_local(value: datetime, tz_name: str = 'UTC') -> datetime:
    return pytz.utc.localize(value).astimezone(pytz.timezone(tz_name))


def enable_sqlite_savepoints(engine) -> None:
    """Let SAVEPOINTs nest inside the outer transaction on pysqlite.

    pysqlite defers BEGIN and a bare SAVEPOINT's RELEASE commits, so the
    driver's own transaction handling is switched off and SQLAlchemy
    emits BEGIN itself.
    """

    @event.listens_for(engine, 'connect')
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')


class User(db.Model):
    """Players and team leaders who can log in."""

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    phone_number = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=current_time)

    memberships = db.relationship(
        'TeamMember', backref='user', lazy=True, cascade='all, delete-orphan'
    )
    notifications = db.relationship(
        'Notification',
        backref='user',
        lazy=True,
        cascade='all, delete-orphan',
        order_by='Notification.created_at.desc()',
    )

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<User {self.id} {self.username}>"

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def led_team_ids(self) -> list[int]:
        return [
            m.team_id for m in self.memberships
            if m.status == 'active' and m.role in LEADER_ROLES
        ]


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    variant = db.Column(db.String(20), nullable=False, default='football_11')
    max_members = db.Column(db.Integer)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=current_time)

    members = db.relationship(
        'TeamMember', backref='team', lazy=True, cascade='all, delete-orphan'
    )
    home_matches = db.relationship(
        'Match',
        foreign_keys='Match.home_team_id',
        backref='home_team',
        lazy=True,
        cascade='all, delete-orphan',
    )
    away_matches = db.relationship(
        'Match',
        foreign_keys='Match.away_team_id',
        backref='away_team',
        lazy=True,
        passive_deletes=True,
    )

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Team {self.id} {self.name}>"

    def active_members(self) -> list['TeamMember']:
        return [m for m in self.members if m.status == 'active']

    def leaders(self) -> list['TeamMember']:
        return [m for m in self.active_members() if m.role in LEADER_ROLES]

    def leader_users(self) -> list[User]:
        return [m.user for m in self.leaders()]

    def membership_for(self, user_id: int | None):
        if user_id is None:
            return None
        return TeamMember.query.filter_by(team_id=self.id, user_id=user_id, status='active').first()

    def has_member(self, user_id: int | None) -> bool:
        return self.membership_for(user_id) is not None

    def is_leader(self, user_id: int | None) -> bool:
        membership = self.membership_for(user_id)
        return bool(membership and membership.role in LEADER_ROLES)

    def is_full(self) -> bool:
        return self.max_members is not None and len(self.active_members()) >= self.max_members

    def add_member(self, user: User, role: str = 'player', now: datetime | None = None) -> 'TeamMember':
        """Attach a user to the roster, reactivating a previous membership."""
        if role not in MEMBER_ROLES:
            raise ValidationError('Unsupported team role')

        existing = TeamMember.query.filter_by(team_id=self.id, user_id=user.id).first()
        if existing and existing.status == 'active':
            raise ValidationError('User is already a member of this team')
        if self.is_full():
            raise ValidationError('Team has reached its member limit')

        if existing:
            existing.status = 'active'
            existing.role = role
            existing.joined_at = now or current_time()
            return existing

        membership = TeamMember(
            team_id=self.id,
            user_id=user.id,
            role=role,
            status='active',
            joined_at=now or current_time(),
        )
        db.session.add(membership)
        self.members.append(membership)
        return membership


class TeamMember(db.Model):
    __tablename__ = 'team_members'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='player')
    status = db.Column(db.String(20), nullable=False, default='active')  # active, inactive
    joined_at = db.Column(db.DateTime, default=current_time)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'team_id', name='unique_team_member'),
        db.Index('ix_team_members_team_status', 'team_id', 'status'),
    )

    @property
    def is_leader(self) -> bool:
        return self.role in LEADER_ROLES


class Match(db.Model):
    __tablename__ = 'matches'

    id = db.Column(db.Integer, primary_key=True)
    home_team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False)
    away_team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'))
    variant = db.Column(db.String(20), nullable=False)
    scheduled_at = db.Column(db.DateTime, nullable=False, index=True)
    location = db.Column(db.String(255), nullable=False)
    match_type = db.Column(db.String(20), nullable=False, default='friendly')
    status = db.Column(db.String(20), nullable=False, default='available', index=True)
    home_score = db.Column(db.Integer)
    away_score = db.Column(db.Integer)
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'))
    confirmed_at = db.Column(db.DateTime)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=current_time)
    updated_at = db.Column(db.DateTime, default=current_time, onupdate=current_time)

    __table_args__ = (
        db.CheckConstraint(
            "(status IN ('available', 'pending') AND away_team_id IS NULL)"
            " OR (status IN ('confirmed', 'in_progress', 'completed') AND away_team_id IS NOT NULL)"
            " OR status = 'cancelled'",
            name='ck_matches_away_team_slot',
        ),
        db.CheckConstraint(
            "status = 'completed' OR (home_score IS NULL AND away_score IS NULL)",
            name='ck_matches_scores_after_completion',
        ),
    )

    creator = db.relationship('User', foreign_keys=[created_by])
    requests = db.relationship(
        'MatchRequest',
        backref='match',
        lazy=True,
        cascade='all, delete-orphan',
        order_by='MatchRequest.created_at',
    )
    availability = db.relationship(
        'MatchAvailability', backref='match', lazy=True, cascade='all, delete-orphan'
    )
    lineups = db.relationship(
        'MatchLineup', backref='match', lazy=True, cascade='all, delete-orphan'
    )
    events = db.relationship(
        'MatchEvent',
        backref='match',
        lazy=True,
        cascade='all, delete-orphan',
        order_by='MatchEvent.id',
    )

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Match {self.id} status={self.status}>"

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_MATCH_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_MATCH_STATUSES

    @property
    def has_started(self) -> bool:
        return self.started_at is not None

    @property
    def versus_display(self) -> str:
        away = self.away_team.name if self.away_team else 'TBD'
        return f"{self.home_team.name} vs {away}"

    @property
    def minimum_players(self) -> int:
        return MINIMUM_PLAYERS.get(self.variant, 5)

    @property
    def winner_team_id(self) -> int | None:
        if self.status != 'completed' or self.home_score is None or self.away_score is None:
            return None
        if self.home_score > self.away_score:
            return self.home_team_id
        if self.away_score > self.home_score:
            return self.away_team_id
        return None

    @property
    def is_draw(self) -> bool:
        return (
            self.status == 'completed'
            and self.home_score is not None
            and self.home_score == self.away_score
        )

    def participating_team_ids(self) -> list[int]:
        return [team_id for team_id in (self.home_team_id, self.away_team_id) if team_id]

    def opponent_of(self, team_id):
        if team_id == self.home_team_id:
            return self.away_team
        if team_id == self.away_team_id:
            return self.home_team
        return None

    def is_home_team_leader(self, user_id: int | None) -> bool:
        return self.home_team.is_leader(user_id)

    def is_away_team_leader(self, user_id: int | None) -> bool:
        return bool(self.away_team and self.away_team.is_leader(user_id))

    def is_team_leader(self, user_id: int | None) -> bool:
        return self.is_home_team_leader(user_id) or self.is_away_team_leader(user_id)

    def led_team_for(self, user_id: int | None):
        """Return the participating team the user leads, home first."""
        if self.is_home_team_leader(user_id):
            return self.home_team
        if self.is_away_team_leader(user_id):
            return self.away_team
        return None

    def pending_requests(self) -> list['MatchRequest']:
        return [req for req in self.requests if req.status == 'pending']

    def availability_summary(self, team_id: int) -> dict:
        counts = {status: 0 for status in AVAILABILITY_STATUSES}
        for record in self.availability:
            if record.team_id == team_id:
                counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    def available_players_count(self, team_id: int) -> int:
        return MatchAvailability.query.filter_by(
            match_id=self.id, team_id=team_id, status='available'
        ).count()

    def needs_player_alert(self, team_id: int) -> bool:
        return self.available_players_count(team_id) < self.minimum_players

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'home_team_id': self.home_team_id,
            'away_team_id': self.away_team_id,
            'variant': self.variant,
            'scheduled_at': self.scheduled_at.isoformat(),
            'location': self.location,
            'match_type': self.match_type,
            'status': self.status,
            'home_score': self.home_score,
            'away_score': self.away_score,
            'notes': self.notes,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class MatchRequest(db.Model):
    """A non-home team's offer to fill a match's away slot."""

    __tablename__ = 'match_requests'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('matches.id', ondelete='CASCADE'), nullable=False)
    requesting_team_id = db.Column(
        db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False
    )
    status = db.Column(db.String(20), nullable=False, default='pending')
    message = db.Column(db.String(500))
    reviewed_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'))
    created_at = db.Column(db.DateTime, default=current_time)

    __table_args__ = (
        db.Index(
            'uq_match_requests_one_accepted',
            'match_id',
            unique=True,
            sqlite_where=text("status = 'accepted'"),
            postgresql_where=text("status = 'accepted'"),
        ),
        db.Index('ix_match_requests_match_status', 'match_id', 'status'),
    )

    requesting_team = db.relationship('Team', foreign_keys=[requesting_team_id])
    reviewer = db.relationship('User', foreign_keys=[reviewed_by])

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'match_id': self.match_id,
            'requesting_team_id': self.requesting_team_id,
            'status': self.status,
            'message': self.message,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'reviewed_by': self.reviewed_by,
        }


class MatchAvailability(db.Model):
    """Per-player attendance confirmation for a match."""

    __tablename__ = 'match_availability'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('matches.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')
    confirmed_at = db.Column(db.DateTime)
    reminded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=current_time)
    updated_at = db.Column(db.DateTime, default=current_time, onupdate=current_time)

    __table_args__ = (
        db.UniqueConstraint('match_id', 'user_id', 'team_id', name='unique_match_availability'),
    )

    user = db.relationship('User')
    team = db.relationship('Team')

    @classmethod
    def ensure_exists(cls, match_id: int, user_id: int, team_id: int) -> 'MatchAvailability':
        """Return the row for the triple, inserting a pending one if missing.

        A concurrent insert of the same triple trips the unique constraint;
        the savepoint is rolled back and the winner's row is returned.
        """
        lookup = {'match_id': match_id, 'user_id': user_id, 'team_id': team_id}
        record = cls.query.filter_by(**lookup).first()
        if record:
            return record

        try:
            with db.session.begin_nested():
                record = cls(status='pending', **lookup)
                db.session.add(record)
        except IntegrityError:
            record = cls.query.filter_by(**lookup).one()
        return record

    def update_status(self, status: str, now: datetime | None = None) -> None:
        if status not in AVAILABILITY_STATUSES or status == 'pending':
            raise ValidationError('Availability must be available, maybe or unavailable')
        self.status = status
        self.confirmed_at = now or current_time()

    def mark_reminded(self, now: datetime | None = None) -> bool:
        if self.reminded_at is not None or self.status != 'pending':
            return False
        self.reminded_at = now or current_time()
        return True

    @property
    def needs_reminder(self) -> bool:
        return self.status == 'pending' and self.reminded_at is None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'match_id': self.match_id,
            'user_id': self.user_id,
            'team_id': self.team_id,
            'status': self.status,
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'reminded_at': self.reminded_at.isoformat() if self.reminded_at else None,
        }


class MatchLineup(db.Model):
    __tablename__ = 'match_lineups'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('matches.id', ondelete='CASCADE'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.String(20))  # goalkeeper, defender, midfielder, forward
    is_starter = db.Column(db.Boolean, nullable=False, default=True)
    is_substitute = db.Column(db.Boolean, nullable=False, default=False)
    minutes_played = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('match_id', 'team_id', 'user_id', name='unique_match_lineup_player'),
    )

    user = db.relationship('User')

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'name': self.user.name,
            'team_id': self.team_id,
            'position': self.position,
            'is_starter': self.is_starter,
            'is_substitute': self.is_substitute,
            'minutes_played': self.minutes_played,
        }


class MatchEvent(db.Model):
    """Goals, assists, cards and substitutions logged while a match is played."""

    __tablename__ = 'match_events'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('matches.id', ondelete='CASCADE'), nullable=False)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'))
    event_type = db.Column(db.String(20), nullable=False)
    minute = db.Column(db.Integer)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=current_time)

    user = db.relationship('User')

    @property
    def is_goal(self) -> bool:
        return self.event_type == 'goal'

    @property
    def label(self) -> str:
        return self.event_type.replace('_', ' ').title()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'match_id': self.match_id,
            'team_id': self.team_id,
            'user_id': self.user_id,
            'player': self.user.name if self.user else None,
            'event_type': self.event_type,
            'label': self.label,
            'minute': self.minute,
            'description': self.description,
        }


class Notification(db.Model):
    """In-app notification feed entries."""

    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    type = db.Column(db.String(60), nullable=False)
    title = db.Column(db.Text, nullable=False)
    message = db.Column(db.Text, nullable=False)
    action_url = db.Column(db.String(255))
    icon = db.Column(db.String(40))
    related_model = db.Column(db.JSON, default=dict)
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=current_time)

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Notification {self.id} user={self.user_id} type={self.type}>"

    def mark_read(self, now: datetime | None = None):
        if not self.is_read:
            self.is_read = True
            self.read_at = now or current_time()

    @classmethod
    def feed_for_user(cls, user_id: int, unread_only: bool = False):
        query = cls.query.filter_by(user_id=user_id)
        if unread_only:
            query = query.filter(cls.is_read.is_(False))
        return query.order_by(cls.created_at.desc(), cls.id.desc())

    @classmethod
    def unread_count(cls, user_id: int) -> int:
        return cls.query.filter_by(user_id=user_id, is_read=False).count()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'action_url': self.action_url,
            'icon': self.icon,
            'related_model': self.related_model or {},
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class JobLock(db.Model):
    """Cross-process single-flight guard for periodic jobs."""

    __tablename__ = 'job_locks'

    name = db.Column(db.String(80), primary_key=True)
    locked_at = db.Column(db.DateTime)
    locked_until = db.Column(db.DateTime)

    @classmethod
    def acquire(cls, name: str, now: datetime, ttl: timedelta) -> bool:
        if db.session.get(cls, name) is None:
            try:
                with db.session.begin_nested():
                    db.session.add(cls(name=name))
            except IntegrityError:
                pass

        claimed = cls.query.filter(
            cls.name == name,
            or_(cls.locked_until.is_(None), cls.locked_until <= now),
        ).update({'locked_at': now, 'locked_until': now + ttl}, synchronize_session=False)
        db.session.commit()
        return claimed == 1

    @classmethod
    def release(cls, name: str) -> None:
        cls.query.filter_by(name=name).update({'locked_until': None}, synchronize_session=False)
        db.session.commit()
