from flask import Blueprint, request, g, jsonify

from blueprints.auth import login_required
from models import db, Notification, current_time

notifications_bp = Blueprint('notifications', __name__, url_prefix='/notifications')


@notifications_bp.route('', methods=['GET'])
@login_required
def feed():
    """Notification feed, newest first."""
    unread_only = request.args.get('unread') == '1'
    limit = request.args.get('limit', 50, type=int)
    notes = Notification.feed_for_user(g.current_user.id, unread_only=unread_only).limit(limit).all()
    return jsonify(
        {
            'notifications': [note.to_dict() for note in notes],
            'unread_count': Notification.unread_count(g.current_user.id),
        }
    )


@notifications_bp.route('/unread-count', methods=['GET'])
@login_required
def unread_count():
    return jsonify({'unread_count': Notification.unread_count(g.current_user.id)})


@notifications_bp.route('/<int:notification_id>/read', methods=['POST'])
@login_required
def mark_read(notification_id):
    note = Notification.query.filter_by(id=notification_id, user_id=g.current_user.id).first_or_404()
    note.mark_read(current_time())
    db.session.commit()
    return jsonify(note.to_dict())


@notifications_bp.route('/read-all', methods=['POST'])
@login_required
def mark_all_read():
    now = current_time()
    notes = Notification.feed_for_user(g.current_user.id, unread_only=True).all()
    for note in notes:
        note.mark_read(now)
    db.session.commit()
    return jsonify({'updated': len(notes), 'unread_count': 0})
