"""Notification delivery over the in-app feed and e-mail."""

import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from errors import DispatchError
from models import db, Notification, current_time, to_local

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ('database',)


def match_url(match) -> str:
    return f'/matches/{match.id}'


def build_event(type_, title, message, action_url=None, icon=None, related_model=None, now=None) -> dict:
    return {
        'type': type_,
        'title': title,
        'message': message,
        'action_url': action_url,
        'icon': icon,
        'related_model': related_model or {},
        'created_at': (now or current_time()).isoformat(),
    }


def _format_kickoff(match) -> str:
    local = to_local(match.scheduled_at, current_app.config.get('APP_TIMEZONE', 'UTC'))
    return local.strftime('%A, %B %d, %Y at %H:%M %Z')


def availability_reminder_event(match, team, now=None) -> dict:
    opponent = match.opponent_of(team.id)
    opponent_name = opponent.name if opponent else 'TBD'
    return build_event(
        'availability_reminder',
        'Confirm Your Availability - Match in 48 Hours',
        f'{team.name} plays {opponent_name} on {_format_kickoff(match)} at {match.location}. '
        'Please confirm your availability.',
        action_url=match_url(match),
        icon='Calendar',
        related_model={'match_id': match.id, 'team_id': team.id},
        now=now,
    )


def match_request_received_event(match_request, now=None) -> dict:
    team = match_request.requesting_team
    return build_event(
        'match_request_received',
        'New Match Request',
        f'{team.name} wants to play your match',
        action_url=match_url(match_request.match),
        icon='Trophy',
        related_model={'match_id': match_request.match_id, 'request_id': match_request.id, 'team_id': team.id},
        now=now,
    )


def match_request_accepted_event(match_request, now=None) -> dict:
    match = match_request.match
    return build_event(
        'match_request_accepted',
        'Match Request Accepted',
        f'{match.home_team.name} accepted your match request for {_format_kickoff(match)}',
        action_url=match_url(match),
        icon='CheckCircle',
        related_model={'match_id': match.id, 'request_id': match_request.id},
        now=now,
    )


def match_request_rejected_event(match_request, now=None) -> dict:
    match = match_request.match
    return build_event(
        'match_request_rejected',
        'Match Request Declined',
        f'{match.home_team.name} declined your match request',
        action_url=match_url(match),
        icon='XCircle',
        related_model={'match_id': match.id, 'request_id': match_request.id},
        now=now,
    )


def match_cancelled_event(match, cancelling_team, now=None) -> dict:
    return build_event(
        'match_cancelled',
        'Match Cancelled',
        f'{cancelling_team.name} cancelled the match',
        action_url=match_url(match),
        icon='X',
        related_model={'match_id': match.id, 'team_id': cancelling_team.id},
        now=now,
    )


def match_score_updated_event(match, updating_team, now=None) -> dict:
    score = f'{match.home_score}-{match.away_score}'
    return build_event(
        'match_score_updated',
        'Match Score Updated',
        f'{updating_team.name} updated the score to {score}',
        action_url=match_url(match),
        icon='Target',
        related_model={'match_id': match.id, 'team_id': updating_team.id},
        now=now,
    )


def sample_event(now=None) -> dict:
    return build_event(
        'test',
        'Test Notification',
        'This is a test notification from Matchday.',
        icon='Bell',
        now=now,
    )


def _send_mail(user, event) -> None:
    config = current_app.config
    server_host = config.get('MAIL_SERVER')
    if not server_host:
        logger.info("Mail server not configured. Skipping mail '%s' to %s", event['title'], user.email)
        return

    message = EmailMessage()
    message['Subject'] = event['title']
    message['From'] = config.get('MAIL_SENDER') or config.get('MAIL_USERNAME')
    message['To'] = user.email
    body = [f'Hello {user.name}!', '', event['message']]
    if event.get('action_url'):
        body.extend(['', f"{config.get('APP_BASE_URL', '')}{event['action_url']}"])
    message.set_content('\n'.join(body))

    try:
        with smtplib.SMTP(server_host, config.get('MAIL_PORT', 587), timeout=10) as server:
            if config.get('MAIL_USE_TLS', True):
                server.starttls()
            if config.get('MAIL_USERNAME') and config.get('MAIL_PASSWORD'):
                server.login(config['MAIL_USERNAME'], config['MAIL_PASSWORD'])
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        raise DispatchError(f'Mail delivery to {user.email} failed: {exc}') from exc


def deliver(user, event: dict, channels=DEFAULT_CHANNELS) -> None:
    """Deliver one event to one user; raises DispatchError on failure.

    Mail goes out before the feed row is added so a failed send leaves no
    half-delivered state in the session.
    """
    unknown = set(channels) - {'mail', 'database'}
    if unknown:
        raise DispatchError(f"Unsupported channel(s): {', '.join(sorted(unknown))}")

    if 'mail' in channels:
        _send_mail(user, event)

    if 'database' in channels:
        db.session.add(
            Notification(
                user_id=user.id,
                type=event['type'],
                title=event['title'],
                message=event['message'],
                action_url=event.get('action_url'),
                icon=event.get('icon'),
                related_model=event.get('related_model') or {},
                created_at=datetime.fromisoformat(event['created_at']),
            )
        )


def notify_users(users, event: dict, channels=DEFAULT_CHANNELS, exclude_user_id=None) -> int:
    """Fan an event out to users, isolating failures per recipient.

    Each recipient's feed row is committed on its own.
    """
    delivered = 0
    seen = set()
    for user in users:
        if user is None or user.id in seen or user.id == exclude_user_id:
            continue
        user_id = user.id
        seen.add(user_id)
        try:
            deliver(user, event, channels)
            db.session.commit()
        except DispatchError as exc:
            logger.warning("Failed to deliver '%s' to user %s: %s", event['type'], user_id, exc)
            continue
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.warning("Failed to store '%s' for user %s: %s", event['type'], user_id, exc)
            continue
        delivered += 1
    return delivered
