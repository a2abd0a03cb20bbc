"""Availability reminders sent 48 hours before kickoff.

Meant to be triggered every 30 minutes by cron through
``flask send-availability-reminders``. The +/- 15 minute window is wider
than half the cadence so drift never skips a match; ``reminded_at`` keeps
overlapping windows from sending twice.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

import dispatch
from errors import DispatchError
from models import db, Match, MatchAvailability, JobLock, current_time

logger = logging.getLogger(__name__)

JOB_NAME = 'availability-reminders'
REMINDER_LEAD_TIME = timedelta(hours=48)
REMINDER_WINDOW = timedelta(minutes=15)
REMINDER_STATUSES = ('confirmed', 'available')
STALE_LOCK_AFTER = timedelta(hours=1)
DEFAULT_REMINDER_CHANNELS = ('mail', 'database')


def reminder_window(now):
    target = now + REMINDER_LEAD_TIME
    return target - REMINDER_WINDOW, target + REMINDER_WINDOW


def matches_due_for_reminders(now) -> list[Match]:
    window_start, window_end = reminder_window(now)
    return (
        Match.query.filter(
            Match.scheduled_at >= window_start,
            Match.scheduled_at <= window_end,
            Match.status.in_(REMINDER_STATUSES),
        )
        .order_by(Match.scheduled_at.asc())
        .all()
    )


def _send_team_reminders(match, team, now, deliver, channels) -> tuple[int, int]:
    sent = failed = 0
    for member in team.active_members():
        availability = MatchAvailability.ensure_exists(match.id, member.user_id, team.id)
        if not availability.needs_reminder:
            continue

        try:
            deliver(member.user, dispatch.availability_reminder_event(match, team, now=now), channels)
        except DispatchError as exc:
            failed += 1
            logger.error('Failed to send reminder to user %s for match %s: %s', member.user_id, match.id, exc)
            # the member stays unmarked so the next run retries
            db.session.commit()
            continue

        availability.mark_reminded(now)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            failed += 1
            logger.error('Failed to record reminder for user %s on match %s: %s', member.user_id, match.id, exc)
            continue
        sent += 1
        logger.debug('Sent reminder to user %s for match %s', member.user_id, match.id)
    return sent, failed


def send_availability_reminders(now=None, deliver=None) -> dict:
    """Run one reminder pass; skipped if another pass holds the job lock."""
    now = now or current_time()
    deliver = deliver or dispatch.deliver
    channels = tuple(current_app.config.get('REMINDER_CHANNELS', DEFAULT_REMINDER_CHANNELS))
    summary = {'matches': 0, 'sent': 0, 'failed': 0, 'skipped': False}

    if not JobLock.acquire(JOB_NAME, now, STALE_LOCK_AFTER):
        logger.info('Availability reminder run already in progress; skipping.')
        summary['skipped'] = True
        return summary

    try:
        matches = matches_due_for_reminders(now)
        if not matches:
            logger.info('No matches found requiring reminders.')
            return summary

        for match in matches:
            away = match.away_team.name if match.away_team else 'TBD'
            logger.info('Processing match %s: %s vs %s', match.id, match.home_team.name, away)
            teams = [match.home_team]
            if match.away_team is not None:
                teams.append(match.away_team)
            for team in teams:
                sent, failed = _send_team_reminders(match, team, now, deliver, channels)
                summary['sent'] += sent
                summary['failed'] += failed
            summary['matches'] += 1

        logger.info('Sent %s reminders for %s matches.', summary['sent'], summary['matches'])
        return summary
    except Exception:
        db.session.rollback()
        raise
    finally:
        JobLock.release(JOB_NAME)
