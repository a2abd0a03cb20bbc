from flask import Blueprint, request, g, jsonify

import lifecycle
from blueprints.auth import login_required, request_data
from errors import ValidationError
from models import db, Match, MatchAvailability, current_time

matches_bp = Blueprint('matches', __name__, url_prefix='/matches')
requests_bp = Blueprint('match_requests', __name__, url_prefix='/match-requests')


def _int_field(data: dict, field: str) -> int:
    try:
        return int(data[field])
    except KeyError:
        raise ValidationError(f'{field} is required')
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')


def _match_detail(match: Match) -> dict:
    user_id = g.current_user.id
    detail = match.to_dict()
    detail['home_team'] = {'id': match.home_team.id, 'name': match.home_team.name}
    detail['away_team'] = (
        {'id': match.away_team.id, 'name': match.away_team.name} if match.away_team else None
    )
    detail['availability'] = {
        team_id: match.availability_summary(team_id) for team_id in match.participating_team_ids()
    }
    detail['my_availability'] = [
        record.to_dict()
        for record in MatchAvailability.query.filter_by(match_id=match.id, user_id=user_id)
    ]
    detail['lineups'] = {
        team_id: [entry.to_dict() for entry in lifecycle.team_lineup(match.id, team_id)]
        for team_id in match.participating_team_ids()
    }
    detail['events'] = [event.to_dict() for event in match.events]
    if match.is_home_team_leader(user_id):
        detail['requests'] = [req.to_dict() for req in match.requests]
    return detail


@matches_bp.route('', methods=['GET'])
@login_required
def list_available():
    """Open slots other teams can request, optionally filtered by variant."""
    variants = request.args.getlist('variant') or None
    matches = lifecycle.available_matches(variants=variants, now=current_time())
    return jsonify([match.to_dict() for match in matches])


@matches_bp.route('', methods=['POST'])
@login_required
def create():
    data = request_data()
    match = lifecycle.create_match(g.current_user, _int_field(data, 'team_id'), data, now=current_time())
    return jsonify(match.to_dict()), 201


@matches_bp.route('/mine', methods=['GET'])
@login_required
def mine():
    return jsonify([match.to_dict() for match in lifecycle.user_matches(g.current_user.id)])


@matches_bp.route('/<int:match_id>', methods=['GET'])
@login_required
def show(match_id):
    match = db.get_or_404(Match, match_id)
    return jsonify(_match_detail(match))


@matches_bp.route('/<int:match_id>', methods=['PATCH'])
@login_required
def update(match_id):
    match = lifecycle.update_match(match_id, g.current_user, request_data(), now=current_time())
    return jsonify(match.to_dict())


@matches_bp.route('/<int:match_id>/start', methods=['POST'])
@login_required
def start(match_id):
    match = lifecycle.start_match(match_id, g.current_user, now=current_time())
    return jsonify(match.to_dict())


@matches_bp.route('/<int:match_id>/score', methods=['POST'])
@login_required
def score(match_id):
    data = request_data()
    match = lifecycle.update_score(
        match_id,
        g.current_user,
        data.get('home_score'),
        data.get('away_score'),
        now=current_time(),
    )
    return jsonify(match.to_dict())


@matches_bp.route('/<int:match_id>/complete', methods=['POST'])
@login_required
def complete(match_id):
    data = request_data()
    match = lifecycle.complete_match(
        match_id,
        g.current_user,
        now=current_time(),
        home_score=data.get('home_score'),
        away_score=data.get('away_score'),
    )
    return jsonify(match.to_dict())


@matches_bp.route('/<int:match_id>/cancel', methods=['POST'])
@login_required
def cancel(match_id):
    match = lifecycle.cancel_match(match_id, g.current_user, now=current_time())
    return jsonify(match.to_dict())


@matches_bp.route('/<int:match_id>/availability', methods=['POST'])
@login_required
def set_availability(match_id):
    data = request_data()
    record, warning = lifecycle.update_availability(
        g.current_user,
        match_id,
        _int_field(data, 'team_id'),
        data.get('status'),
        now=current_time(),
    )
    payload = record.to_dict()
    if warning:
        payload['warning'] = warning
    return jsonify(payload)


@matches_bp.route('/<int:match_id>/leaders', methods=['GET'])
@login_required
def leaders(match_id):
    """Leader contact details, visible to leaders once the match is confirmed."""
    return jsonify(lifecycle.opposing_team_leaders(match_id, g.current_user))


@matches_bp.route('/<int:match_id>/lineup', methods=['PUT'])
@login_required
def set_lineup(match_id):
    data = request_data()
    entries = lifecycle.set_lineup(
        g.current_user, match_id, _int_field(data, 'team_id'), data.get('players')
    )
    return jsonify([entry.to_dict() for entry in entries])


@matches_bp.route('/<int:match_id>/events', methods=['POST'])
@login_required
def record_event(match_id):
    data = request_data()
    event = lifecycle.record_event(
        g.current_user, match_id, _int_field(data, 'team_id'), data, now=current_time()
    )
    return jsonify(event.to_dict()), 201


@matches_bp.route('/<int:match_id>/events/<int:event_id>', methods=['DELETE'])
@login_required
def delete_event(match_id, event_id):
    lifecycle.delete_event(g.current_user, match_id, event_id)
    return jsonify({'deleted': event_id})


@requests_bp.route('', methods=['POST'])
@login_required
def create_request():
    data = request_data()
    match_request = lifecycle.create_request(
        g.current_user,
        _int_field(data, 'match_id'),
        _int_field(data, 'team_id'),
        data.get('message'),
        now=current_time(),
    )
    return jsonify(match_request.to_dict()), 201


@requests_bp.route('/<int:request_id>/accept', methods=['POST'])
@login_required
def accept_request(request_id):
    match = lifecycle.accept_request(g.current_user, request_id, now=current_time())
    return jsonify(match.to_dict())


@requests_bp.route('/<int:request_id>/reject', methods=['POST'])
@login_required
def reject_request(request_id):
    match_request = lifecycle.reject_request(g.current_user, request_id, now=current_time())
    return jsonify(match_request.to_dict())
