from flask import Blueprint, request, g, jsonify
from functools import wraps

import lifecycle
from blueprints.auth import login_required, request_data
from errors import AuthorizationError, NotFoundError, ValidationError
from models import db, Team, User, MATCH_VARIANTS, current_time

team_bp = Blueprint('team', __name__, url_prefix='/teams')


def require_team_leadership(f):
    """Require the current user to captain or co-captain the target team."""

    @wraps(f)
    def decorated_function(team_id, *args, **kwargs):
        team = Team.query.filter_by(id=team_id, is_active=True).first()
        if team is None:
            raise NotFoundError('Team not found')

        if not team.is_leader(g.current_user.id):
            raise AuthorizationError('You do not have permission to manage this team.')

        g.team_context = team
        return f(team_id, *args, **kwargs)

    return decorated_function


def _team_payload(team: Team) -> dict:
    return {
        'id': team.id,
        'name': team.name,
        'variant': team.variant,
        'max_members': team.max_members,
        'members': [
            {
                'user_id': member.user_id,
                'name': member.user.name,
                'role': member.role,
                'joined_at': member.joined_at.isoformat() if member.joined_at else None,
            }
            for member in team.active_members()
        ],
    }


@team_bp.route('', methods=['POST'])
@login_required
def create_team():
    """Create a team; the creator becomes its captain."""
    data = request_data()
    name = (data.get('name') or '').strip()
    variant = data.get('variant') or 'football_11'
    max_members = data.get('max_members')

    if not name:
        raise ValidationError('Team name is required.')
    if variant not in MATCH_VARIANTS:
        raise ValidationError('Unsupported team variant.')
    if max_members is not None:
        try:
            max_members = int(max_members)
        except (TypeError, ValueError):
            raise ValidationError('Member limit must be a number.')

    team = Team(name=name, variant=variant, max_members=max_members, created_by=g.current_user.id)
    try:
        db.session.add(team)
        db.session.flush()
        team.add_member(g.current_user, role='captain', now=current_time())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(_team_payload(team)), 201


@team_bp.route('/<int:team_id>', methods=['GET'])
@login_required
def team_detail(team_id):
    team = Team.query.filter_by(id=team_id, is_active=True).first()
    if team is None:
        raise NotFoundError('Team not found')
    return jsonify(_team_payload(team))


@team_bp.route('/<int:team_id>/members', methods=['POST'])
@login_required
@require_team_leadership
def add_member(team_id):
    data = request_data()
    team = g.team_context
    user = db.session.get(User, data.get('user_id')) if data.get('user_id') else None
    if user is None:
        raise NotFoundError('User not found')

    try:
        team.add_member(user, role=data.get('role') or 'player', now=current_time())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return jsonify(_team_payload(team)), 201


@team_bp.route('/<int:team_id>/members/<int:user_id>', methods=['DELETE'])
@login_required
@require_team_leadership
def remove_member(team_id, user_id):
    team = g.team_context
    membership = team.membership_for(user_id)
    if membership is None:
        raise NotFoundError('Member not found')
    if membership.role == 'captain' and len([m for m in team.leaders() if m.role == 'captain']) == 1:
        raise ValidationError('A team must keep its captain.')

    membership.status = 'inactive'
    db.session.commit()
    return jsonify(_team_payload(team))


@team_bp.route('/<int:team_id>/matches', methods=['GET'])
@login_required
def team_matches(team_id):
    matches = lifecycle.team_matches(team_id, status=request.args.get('status'))
    return jsonify([match.to_dict() for match in matches])
