"""Match lifecycle: scheduling, match requests, results and availability.

Every status change is a compare-and-set on ``matches.status``: the UPDATE
only applies while the row still holds the status the caller saw, and a
miss raises ConflictError. Notifications go out after the commit.
"""

import logging
from contextlib import contextmanager
from datetime import datetime

import pytz
from flask import current_app
from sqlalchemy import or_

import dispatch
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models import (
    db,
    Match,
    MatchAvailability,
    MatchEvent,
    MatchLineup,
    MatchRequest,
    Team,
    EVENT_TYPES,
    LINEUP_POSITIONS,
    LINEUP_STATUSES,
    MATCH_TYPES,
    MATCH_VARIANTS,
    OPEN_MATCH_STATUSES,
    LEADER_ROLES,
    TeamMember,
    current_time,
)

logger = logging.getLogger(__name__)

MAX_REQUEST_MESSAGE_LENGTH = 500
MAX_LOCATION_LENGTH = 255
MAX_EVENT_DESCRIPTION_LENGTH = 500
MAX_EVENT_MINUTE = 120
ANSWERED_AVAILABILITY_STATUSES = ('available', 'maybe', 'unavailable')
EDITABLE_MATCH_FIELDS = ('scheduled_at', 'location', 'match_type', 'notes')


@contextmanager
def unit_of_work():
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _get_or_404(model, ident, label: str):
    record = db.session.get(model, ident) if ident is not None else None
    if record is None:
        raise NotFoundError(f'{label} not found')
    return record


def _actor_id(actor):
    return getattr(actor, 'id', None)


def _channels():
    return tuple(current_app.config.get('NOTIFICATION_CHANNELS', dispatch.DEFAULT_CHANNELS))


def parse_datetime(value, field: str = 'scheduled_at') -> datetime:
    """Parse an ISO-8601 value into a naive UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if not value:
            raise ValidationError(f'{field} is required')
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            raise ValidationError(f'{field} must be an ISO-8601 datetime')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(pytz.utc).replace(tzinfo=None)
    return parsed


def parse_score(value, field: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f'{field} is required')
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        value = int(value.strip())
    if not isinstance(value, int):
        raise ValidationError(f'{field} must be a whole number')
    if value < 0:
        raise ValidationError(f'{field} cannot be negative')
    return value


def parse_text(value, field: str, max_length: int | None = None):
    """Optional free-text field; None and blank strings come back as None."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be text')
    value = value.strip()
    if max_length is not None and len(value) > max_length:
        raise ValidationError(f'{field} must be at most {max_length} characters')
    return value or None


def compare_and_set_status(match: Match, expected, **values) -> None:
    """Apply ``values`` only if the match row still has an expected status."""
    expected = (expected,) if isinstance(expected, str) else tuple(expected)
    changed = Match.query.filter(
        Match.id == match.id,
        Match.status.in_(expected),
    ).update(values, synchronize_session=False)
    if changed != 1:
        raise ConflictError('This match was changed by someone else. Refresh and try again.')
    db.session.refresh(match)


def _authorize_transition(match: Match, actor) -> Team:
    """Home leaders act on open matches; either side's leaders afterwards."""
    actor_id = _actor_id(actor)
    if match.status in OPEN_MATCH_STATUSES:
        allowed = match.is_home_team_leader(actor_id)
    else:
        allowed = match.is_team_leader(actor_id)
    if not allowed:
        raise AuthorizationError('Only team captains can manage this match')
    return match.led_team_for(actor_id)


def _notify_team_leaders(team, event, exclude_user_id=None) -> int:
    if team is None:
        return 0
    return dispatch.notify_users(
        team.leader_users(), event, channels=_channels(), exclude_user_id=exclude_user_id
    )


# ----------------------------------------------------------------------
# Match state machine
# ----------------------------------------------------------------------
def create_match(actor, team_id, data: dict, now=None) -> Match:
    """Publish an open slot that another team can request to fill."""
    now = now or current_time()
    team = _get_or_404(Team, team_id, 'Team')
    if not team.is_active:
        raise NotFoundError('Team not found')
    if not team.is_leader(_actor_id(actor)):
        raise AuthorizationError('Only team leaders can create match availability')

    scheduled_at = parse_datetime(data.get('scheduled_at'))
    if scheduled_at <= now:
        raise ValidationError('Match must be scheduled in the future')

    location = parse_text(data.get('location'), 'Location', MAX_LOCATION_LENGTH)
    if not location:
        raise ValidationError('Location is required')

    match_type = data.get('match_type') or 'friendly'
    if match_type not in MATCH_TYPES:
        raise ValidationError('Match type must be friendly or competitive')

    if team.variant not in MATCH_VARIANTS:
        raise ValidationError('Team has an unsupported variant')

    match = Match(
        home_team_id=team.id,
        away_team_id=None,
        variant=team.variant,
        scheduled_at=scheduled_at,
        location=location,
        match_type=match_type,
        status='available',
        notes=parse_text(data.get('notes'), 'Notes'),
        created_by=_actor_id(actor),
        created_at=now,
    )
    with unit_of_work():
        db.session.add(match)

    logger.info('Team %s opened match %s for %s', team.id, match.id, scheduled_at.isoformat())
    return match


def update_match(match_id, actor, data: dict, now=None) -> Match:
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    if not match.is_home_team_leader(_actor_id(actor)):
        raise AuthorizationError('Only the home team leader can edit this match')
    if match.has_started or match.is_terminal or match.status == 'in_progress':
        raise ConflictError('Cannot update a match that has already started')

    updates = {key: data[key] for key in EDITABLE_MATCH_FIELDS if key in data}
    if 'scheduled_at' in updates:
        updates['scheduled_at'] = parse_datetime(updates['scheduled_at'])
        if updates['scheduled_at'] <= now:
            raise ValidationError('Match must be scheduled in the future')
    if 'location' in updates:
        updates['location'] = parse_text(updates['location'], 'Location', MAX_LOCATION_LENGTH)
        if not updates['location']:
            raise ValidationError('Location is required')
    if 'notes' in updates:
        updates['notes'] = parse_text(updates['notes'], 'Notes')
    if 'match_type' in updates and updates['match_type'] not in MATCH_TYPES:
        raise ValidationError('Match type must be friendly or competitive')

    with unit_of_work():
        for field, value in updates.items():
            setattr(match, field, value)
    return match


def start_match(match_id, actor, now=None) -> Match:
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    _authorize_transition(match, actor)
    if match.status != 'confirmed':
        raise ConflictError('Only confirmed matches can be started')
    if now < match.scheduled_at:
        raise ValidationError('Cannot start a match before its scheduled time')

    with unit_of_work():
        compare_and_set_status(match, 'confirmed', status='in_progress', started_at=now)

    logger.info('Match %s started', match.id)
    return match


def update_score(match_id, actor, home_score, away_score, now=None) -> Match:
    """Record the final score; completes an in-progress match."""
    now = now or current_time()
    home_score = parse_score(home_score, 'home_score')
    away_score = parse_score(away_score, 'away_score')

    match = _get_or_404(Match, match_id, 'Match')
    updating_team = _authorize_transition(match, actor)
    if match.status not in ('in_progress', 'completed'):
        raise ConflictError('Scores can only be recorded once the match is in progress')
    if now < match.scheduled_at:
        raise ValidationError('Cannot update score before the match starts')

    values = {'home_score': home_score, 'away_score': away_score}
    if match.status == 'in_progress':
        values.update(status='completed', completed_at=now)

    with unit_of_work():
        compare_and_set_status(match, match.status, **values)

    logger.info('Match %s score set to %s-%s', match.id, home_score, away_score)
    _notify_team_leaders(
        match.opponent_of(updating_team.id),
        dispatch.match_score_updated_event(match, updating_team, now=now),
    )
    return match


def complete_match(match_id, actor, now=None, home_score=None, away_score=None) -> Match:
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    updating_team = _authorize_transition(match, actor)
    if match.status != 'in_progress':
        raise ConflictError('Can only complete in-progress matches')
    if home_score is None or away_score is None:
        raise ValidationError('Both scores are required to complete a match')
    home_score = parse_score(home_score, 'home_score')
    away_score = parse_score(away_score, 'away_score')
    if now < match.scheduled_at:
        raise ValidationError('Cannot complete match before it has started')

    with unit_of_work():
        compare_and_set_status(
            match,
            'in_progress',
            status='completed',
            completed_at=now,
            home_score=home_score,
            away_score=away_score,
        )

    logger.info('Match %s completed %s-%s', match.id, home_score, away_score)
    _notify_team_leaders(
        match.opponent_of(updating_team.id),
        dispatch.match_score_updated_event(match, updating_team, now=now),
    )
    return match


def cancel_match(match_id, actor, now=None) -> Match:
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    if match.is_terminal:
        raise ConflictError(f'Match is already {match.status}')
    cancelling_team = _authorize_transition(match, actor)

    dropped_requests = match.pending_requests()
    with unit_of_work():
        compare_and_set_status(match, match.status, status='cancelled')
        for match_request in dropped_requests:
            match_request.status = 'rejected'
            match_request.reviewed_at = now
            match_request.reviewed_by = _actor_id(actor)

    logger.info('Match %s cancelled by team %s', match.id, cancelling_team.id)
    _notify_team_leaders(
        match.opponent_of(cancelling_team.id),
        dispatch.match_cancelled_event(match, cancelling_team, now=now),
    )
    for match_request in dropped_requests:
        _notify_team_leaders(
            match_request.requesting_team,
            dispatch.match_request_rejected_event(match_request, now=now),
        )
    return match


# ----------------------------------------------------------------------
# Match request workflow
# ----------------------------------------------------------------------
def create_request(actor, match_id, requesting_team_id, message=None, now=None) -> MatchRequest:
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    team = _get_or_404(Team, requesting_team_id, 'Team')

    if not team.is_leader(_actor_id(actor)):
        raise AuthorizationError('Only team leaders can request matches')
    if team.id == match.home_team_id:
        raise ValidationError('A team cannot request its own match')
    if team.variant != match.variant:
        raise ValidationError('Team variant must match the match variant')
    message = parse_text(message, 'Message', MAX_REQUEST_MESSAGE_LENGTH)
    if match.status not in OPEN_MATCH_STATUSES or match.scheduled_at <= now:
        raise ConflictError('This match is no longer available')

    duplicate = MatchRequest.query.filter_by(
        match_id=match.id, requesting_team_id=team.id, status='pending'
    ).first()
    if duplicate:
        raise ValidationError('You already have a pending request for this match')

    match_request = MatchRequest(
        match_id=match.id,
        requesting_team_id=team.id,
        status='pending',
        message=message,
        created_at=now,
    )
    with unit_of_work():
        db.session.add(match_request)
        compare_and_set_status(match, OPEN_MATCH_STATUSES, status='pending')

    logger.info('Team %s requested match %s (request %s)', team.id, match.id, match_request.id)
    _notify_team_leaders(
        match.home_team,
        dispatch.match_request_received_event(match_request, now=now),
        exclude_user_id=_actor_id(actor),
    )
    return match_request


def accept_request(actor, request_id, now=None) -> Match:
    now = now or current_time()
    match_request = _get_or_404(MatchRequest, request_id, 'Match request')
    match = match_request.match

    if not match.is_home_team_leader(_actor_id(actor)):
        raise AuthorizationError('Only the home team leader can accept requests')
    if match_request.status != 'pending':
        raise ConflictError('This match request is no longer available')

    with unit_of_work():
        compare_and_set_status(
            match,
            OPEN_MATCH_STATUSES,
            status='confirmed',
            away_team_id=match_request.requesting_team_id,
            confirmed_at=now,
        )
        claimed = MatchRequest.query.filter_by(id=match_request.id, status='pending').update(
            {'status': 'accepted', 'reviewed_at': now, 'reviewed_by': _actor_id(actor)},
            synchronize_session=False,
        )
        if claimed != 1:
            raise ConflictError('This match request is no longer available')

        rejected = MatchRequest.query.filter(
            MatchRequest.match_id == match.id,
            MatchRequest.id != match_request.id,
            MatchRequest.status == 'pending',
        ).all()
        for other in rejected:
            other.status = 'rejected'
            other.reviewed_at = now
            other.reviewed_by = _actor_id(actor)

    logger.info('Match %s confirmed against team %s', match.id, match.away_team_id)
    _notify_team_leaders(
        match_request.requesting_team,
        dispatch.match_request_accepted_event(match_request, now=now),
    )
    for other in rejected:
        _notify_team_leaders(
            other.requesting_team,
            dispatch.match_request_rejected_event(other, now=now),
        )
    return match


def reject_request(actor, request_id, now=None) -> MatchRequest:
    now = now or current_time()
    match_request = _get_or_404(MatchRequest, request_id, 'Match request')
    match = match_request.match

    if not match.is_home_team_leader(_actor_id(actor)):
        raise AuthorizationError('Only the home team leader can reject requests')
    if match_request.status != 'pending':
        raise ConflictError('This match request is no longer available')

    with unit_of_work():
        claimed = MatchRequest.query.filter_by(id=match_request.id, status='pending').update(
            {'status': 'rejected', 'reviewed_at': now, 'reviewed_by': _actor_id(actor)},
            synchronize_session=False,
        )
        if claimed != 1:
            raise ConflictError('This match request is no longer available')

        remaining = MatchRequest.query.filter_by(match_id=match.id, status='pending').count()
        if remaining == 0:
            # a concurrent accept may already have confirmed the match
            Match.query.filter_by(id=match.id, status='pending').update(
                {'status': 'available'}, synchronize_session=False
            )

    logger.info('Request %s for match %s rejected', match_request.id, match.id)
    _notify_team_leaders(
        match_request.requesting_team,
        dispatch.match_request_rejected_event(match_request, now=now),
    )
    return match_request


# ----------------------------------------------------------------------
# Availability
# ----------------------------------------------------------------------
def update_availability(actor, match_id, team_id, status, now=None):
    """Record a player's answer; returns (record, low-availability warning)."""
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    team = _get_or_404(Team, team_id, 'Team')
    actor_id = _actor_id(actor)

    if status not in ANSWERED_AVAILABILITY_STATUSES:
        raise ValidationError('Availability must be available, maybe or unavailable')
    if team.id not in match.participating_team_ids():
        raise AuthorizationError('This team is not playing in this match.')
    if not team.has_member(actor_id):
        raise AuthorizationError('You are not a member of this team.')
    if match.is_terminal:
        raise ConflictError('Availability can no longer be changed for this match')

    with unit_of_work():
        record = MatchAvailability.ensure_exists(match.id, actor_id, team.id)
        record.update_status(status, now)

    warning = None
    if team.is_leader(actor_id) and match.needs_player_alert(team.id):
        warning = (
            f'Only {match.available_players_count(team.id)}/{match.minimum_players} '
            'players confirmed available.'
        )
    return record, warning


# ----------------------------------------------------------------------
# Contacts, lineups and match events
# ----------------------------------------------------------------------
def _leader_contacts(team) -> list[dict]:
    if team is None:
        return []
    return [
        {
            'id': member.user.id,
            'name': member.user.name,
            'phone_number': member.user.phone_number,
            'role': member.role,
        }
        for member in team.leaders()
    ]


def opposing_team_leaders(match_id, actor) -> dict:
    """Leader contacts for both sides, shared only between leaders of a confirmed match."""
    match = _get_or_404(Match, match_id, 'Match')
    contacts = {'home_leaders': [], 'away_leaders': []}
    if match.status != 'confirmed' or not match.is_team_leader(_actor_id(actor)):
        return contacts
    contacts['home_leaders'] = _leader_contacts(match.home_team)
    contacts['away_leaders'] = _leader_contacts(match.away_team)
    return contacts


def _playing_team(match: Match, team_id, actor) -> Team:
    team = _get_or_404(Team, team_id, 'Team')
    if team.id not in match.participating_team_ids():
        raise ValidationError('This team is not playing in this match.')
    if not team.is_leader(_actor_id(actor)):
        raise AuthorizationError('Only team captains can manage this match')
    return team


def _flag(entry: dict, key: str, default: bool) -> bool:
    value = entry.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f'{key} must be true or false')
    return value


def _player_id(value, team: Team):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError('user_id must be a player id')
    if not team.has_member(value):
        raise ValidationError(f'User {value} is not an active member of {team.name}')
    return value


def set_lineup(actor, match_id, team_id, players) -> list[MatchLineup]:
    """Replace a team's lineup for a confirmed or in-progress match."""
    match = _get_or_404(Match, match_id, 'Match')
    if match.status not in LINEUP_STATUSES:
        raise ConflictError('Lineups can only be set for confirmed or in-progress matches')
    team = _playing_team(match, team_id, actor)
    if not isinstance(players, list) or not players:
        raise ValidationError('At least one player is required')

    entries = []
    seen = set()
    for entry in players:
        if not isinstance(entry, dict):
            raise ValidationError('Each lineup entry must be an object')
        user_id = _player_id(entry.get('user_id'), team)
        if user_id in seen:
            raise ValidationError(f'User {user_id} is listed twice')
        seen.add(user_id)
        position = entry.get('position')
        if position is not None and position not in LINEUP_POSITIONS:
            raise ValidationError('Position must be goalkeeper, defender, midfielder or forward')
        entries.append(
            MatchLineup(
                match_id=match.id,
                team_id=team.id,
                user_id=user_id,
                position=position,
                is_starter=_flag(entry, 'is_starter', True),
                is_substitute=_flag(entry, 'is_substitute', False),
                minutes_played=0,
            )
        )

    with unit_of_work():
        for existing in MatchLineup.query.filter_by(match_id=match.id, team_id=team.id).all():
            db.session.delete(existing)
        # deletes must reach the table before the unique key is reused
        db.session.flush()
        db.session.add_all(entries)

    logger.info('Team %s set a lineup of %s for match %s', team.id, len(entries), match.id)
    return entries


def team_lineup(match_id, team_id) -> list[MatchLineup]:
    return (
        MatchLineup.query.filter_by(match_id=match_id, team_id=team_id)
        .order_by(MatchLineup.id.asc())
        .all()
    )


def parse_minute(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError('Minute must be a whole number')
    if value < 0 or value > MAX_EVENT_MINUTE:
        raise ValidationError(f'Minute must be between 0 and {MAX_EVENT_MINUTE}')
    return value


def record_event(actor, match_id, team_id, data: dict, now=None) -> MatchEvent:
    """Log a goal, assist, card or substitution while the match is being played."""
    now = now or current_time()
    match = _get_or_404(Match, match_id, 'Match')
    if match.status != 'in_progress':
        raise ConflictError('Events can only be recorded while the match is in progress')
    team = _playing_team(match, team_id, actor)

    event_type = data.get('event_type')
    if event_type not in EVENT_TYPES:
        raise ValidationError('Unknown event type')
    user_id = data.get('user_id')
    if user_id is not None:
        user_id = _player_id(user_id, team)

    event = MatchEvent(
        match_id=match.id,
        team_id=team.id,
        user_id=user_id,
        event_type=event_type,
        minute=parse_minute(data.get('minute')),
        description=parse_text(data.get('description'), 'Description', MAX_EVENT_DESCRIPTION_LENGTH),
        created_at=now,
    )
    with unit_of_work():
        db.session.add(event)

    logger.info('Match %s: %s for team %s at minute %s', match.id, event_type, team.id, event.minute)
    return event


def delete_event(actor, match_id, event_id) -> None:
    event = _get_or_404(MatchEvent, event_id, 'Match event')
    if event.match_id != match_id:
        raise NotFoundError('Match event not found')
    team = db.session.get(Team, event.team_id)
    if team is None or not team.is_leader(_actor_id(actor)):
        raise AuthorizationError('Only leaders of the recording team can remove this event')

    with unit_of_work():
        db.session.delete(event)
    logger.info('Match %s: event %s removed', match_id, event_id)


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------
def available_matches(variants=None, now=None) -> list[Match]:
    now = now or current_time()
    query = Match.query.filter(Match.status == 'available', Match.scheduled_at > now)
    if variants:
        query = query.filter(Match.variant.in_(variants))
    return query.order_by(Match.scheduled_at.asc()).all()


def team_matches(team_id, status=None) -> list[Match]:
    query = Match.query.filter(or_(Match.home_team_id == team_id, Match.away_team_id == team_id))
    if status:
        query = query.filter(Match.status == status)
    return query.order_by(Match.scheduled_at.desc()).all()


def user_matches(user_id) -> list[Match]:
    """Matches of every team the user captains or co-captains."""
    team_ids = [
        membership.team_id
        for membership in TeamMember.query.filter(
            TeamMember.user_id == user_id,
            TeamMember.status == 'active',
            TeamMember.role.in_(LEADER_ROLES),
        )
    ]
    if not team_ids:
        return []
    return (
        Match.query.filter(or_(Match.home_team_id.in_(team_ids), Match.away_team_id.in_(team_ids)))
        .order_by(Match.scheduled_at.desc())
        .all()
    )
