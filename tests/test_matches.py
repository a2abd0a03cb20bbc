"""
Integration tests for matches and match-requests blueprints
Tests /matches/* and /match-requests/* routes end to end
"""
from datetime import timedelta

import pytest

import lifecycle
from models import db, Match, MatchRequest, Notification, current_time


def db_request_status(request_id):
    return MatchRequest.query.filter_by(id=request_id).one().status


@pytest.fixture
def upcoming_match(home_team, home_captain):
    """An open slot three days after the real clock, for routes that use current time."""
    now = current_time()
    return lifecycle.create_match(
        home_captain,
        home_team.id,
        {'scheduled_at': (now + timedelta(days=3)).isoformat(), 'location': 'Riverside Park'},
        now=now,
    )


@pytest.fixture
def upcoming_request(upcoming_match, away_team, away_captain):
    return lifecycle.create_request(away_captain, upcoming_match.id, away_team.id, 'See you there', now=current_time())


class TestMatchCreationRoutes:
    """Test POST /matches and PATCH /matches/<id>"""

    def test_leader_creates_slot(self, login_as, home_team, home_captain):
        """Test captain can publish an open slot"""
        client = login_as(home_captain)
        kickoff = (current_time() + timedelta(days=5)).replace(microsecond=0)

        response = client.post('/matches', json={
            'team_id': home_team.id,
            'scheduled_at': kickoff.isoformat(),
            'location': 'Victoria Rec',
            'match_type': 'competitive',
        })

        assert response.status_code == 201
        payload = response.get_json()
        assert payload['status'] == 'available'
        assert payload['away_team_id'] is None
        assert payload['variant'] == 'football_7'
        assert payload['scheduled_at'] == kickoff.isoformat()

    def test_player_gets_403(self, login_as, home_team, home_players):
        client = login_as(home_players[0])

        response = client.post('/matches', json={
            'team_id': home_team.id,
            'scheduled_at': (current_time() + timedelta(days=5)).isoformat(),
            'location': 'Victoria Rec',
        })

        assert response.status_code == 403
        assert response.get_json()['error'] == 'Only team leaders can create match availability'
        assert Match.query.count() == 0

    def test_missing_team_id(self, login_as, home_captain):
        client = login_as(home_captain)
        response = client.post('/matches', json={'location': 'Victoria Rec'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'team_id is required'

    def test_past_kickoff_rejected(self, login_as, home_team, home_captain):
        client = login_as(home_captain)
        response = client.post('/matches', json={
            'team_id': home_team.id,
            'scheduled_at': (current_time() - timedelta(days=1)).isoformat(),
            'location': 'Victoria Rec',
        })
        assert response.status_code == 400

    def test_home_leader_edits_slot(self, login_as, upcoming_match, home_captain):
        client = login_as(home_captain)

        response = client.patch(f'/matches/{upcoming_match.id}', json={'location': 'Pitch 2', 'notes': 'Astro'})

        assert response.status_code == 200
        assert response.get_json()['location'] == 'Pitch 2'

    def test_away_leader_cannot_edit(self, login_as, upcoming_match, away_captain):
        client = login_as(away_captain)
        response = client.patch(f'/matches/{upcoming_match.id}', json={'location': 'My place'})
        assert response.status_code == 403

    def test_notes_object_is_400(self, login_as, upcoming_match, home_captain):
        client = login_as(home_captain)

        response = client.patch(f'/matches/{upcoming_match.id}', json={'notes': {'kit': 'white'}})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Notes must be text'



class TestMatchBrowsing:
    """Test GET /matches, /matches/mine and /matches/<id>"""

    def test_list_available_slots(self, login_as, upcoming_match, outsider):
        client = login_as(outsider)

        assert [m['id'] for m in client.get('/matches').get_json()] == [upcoming_match.id]
        assert client.get('/matches?variant=futsal').get_json() == []
        assert len(client.get('/matches?variant=futsal&variant=football_7').get_json()) == 1

    def test_pending_slot_is_not_listed(self, login_as, upcoming_request, outsider):
        client = login_as(outsider)
        assert client.get('/matches').get_json() == []

    def test_browsing_requires_login(self, client):
        assert client.get('/matches').status_code == 401

    def test_my_matches(self, login_as, upcoming_match, home_captain, away_captain):
        assert len(login_as(home_captain).get('/matches/mine').get_json()) == 1
        assert login_as(away_captain).get('/matches/mine').get_json() == []

    def test_detail_shows_requests_to_home_leader_only(self, login_as, upcoming_request, home_captain, away_captain):
        match_id = upcoming_request.match_id

        detail = login_as(home_captain).get(f'/matches/{match_id}').get_json()
        assert detail['status'] == 'pending'
        assert detail['home_team']['name'] == 'Harbour Rovers'
        assert detail['away_team'] is None
        assert [r['id'] for r in detail['requests']] == [upcoming_request.id]

        detail = login_as(away_captain).get(f'/matches/{match_id}').get_json()
        assert 'requests' not in detail

    def test_unknown_match_is_404_json(self, login_as, outsider):
        response = login_as(outsider).get('/matches/9999')

        assert response.status_code == 404
        assert 'error' in response.get_json()


class TestMatchRequestRoutes:
    """Test /match-requests routes"""

    def test_request_and_accept(self, login_as, upcoming_match, away_team, away_captain, home_captain):
        """Full request/accept round trip over HTTP"""
        client = login_as(away_captain)
        response = client.post('/match-requests', json={
            'match_id': upcoming_match.id,
            'team_id': away_team.id,
            'message': 'Fancy a game?',
        })
        assert response.status_code == 201
        request_id = response.get_json()['id']

        client = login_as(home_captain)
        response = client.post(f'/match-requests/{request_id}/accept')

        assert response.status_code == 200
        payload = response.get_json()
        assert payload['status'] == 'confirmed'
        assert payload['away_team_id'] == away_team.id
        assert db_request_status(request_id) == 'accepted'

        feed = login_as(away_captain).get('/notifications').get_json()
        assert [n['type'] for n in feed['notifications']] == ['match_request_accepted']

    def test_accepting_twice_is_409(self, login_as, upcoming_request, home_captain):
        client = login_as(home_captain)
        assert client.post(f'/match-requests/{upcoming_request.id}/accept').status_code == 200

        response = client.post(f'/match-requests/{upcoming_request.id}/accept')
        assert response.status_code == 409
        assert 'no longer available' in response.get_json()['error']

    def test_competing_request_loses(self, login_as, upcoming_request, third_team, third_captain, home_captain):
        client = login_as(third_captain)
        response = client.post('/match-requests', json={
            'match_id': upcoming_request.match_id,
            'team_id': third_team.id,
        })
        assert response.status_code == 201
        competing_id = response.get_json()['id']

        client = login_as(home_captain)
        client.post(f'/match-requests/{upcoming_request.id}/accept')

        assert db_request_status(competing_id) == 'rejected'
        assert client.post(f'/match-requests/{competing_id}/accept').status_code == 409

    def test_reject_reopens_slot(self, login_as, upcoming_request, home_captain):
        client = login_as(home_captain)

        response = client.post(f'/match-requests/{upcoming_request.id}/reject')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'rejected'
        assert client.get(f'/matches/{upcoming_request.match_id}').get_json()['status'] == 'available'

    def test_requester_cannot_accept_own_request(self, login_as, upcoming_request, away_captain):
        response = login_as(away_captain).post(f'/match-requests/{upcoming_request.id}/accept')
        assert response.status_code == 403

    def test_unknown_request(self, login_as, home_captain):
        assert login_as(home_captain).post('/match-requests/4242/reject').status_code == 404

    def test_bad_ids(self, login_as, away_captain):
        response = login_as(away_captain).post('/match-requests', json={'match_id': 'abc', 'team_id': 1})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'match_id must be an integer'


class TestMatchDayRoutes:
    """Test availability, start, score and cancel routes on a confirmed match"""

    @pytest.fixture
    def confirmed(self, upcoming_request, home_captain):
        return lifecycle.accept_request(home_captain, upcoming_request.id, now=current_time())

    def test_availability_with_leader_warning(self, login_as, confirmed, home_captain, home_players):
        response = login_as(home_players[0]).post(
            f'/matches/{confirmed.id}/availability',
            json={'team_id': confirmed.home_team_id, 'status': 'available'},
        )
        assert response.status_code == 200
        assert response.get_json()['status'] == 'available'
        assert 'warning' not in response.get_json()

        response = login_as(home_captain).post(
            f'/matches/{confirmed.id}/availability',
            json={'team_id': confirmed.home_team_id, 'status': 'maybe'},
        )
        assert response.get_json()['warning'] == 'Only 1/7 players confirmed available.'

        detail = login_as(home_captain).get(f'/matches/{confirmed.id}').get_json()
        home_summary = detail['availability'][str(confirmed.home_team_id)]
        assert home_summary['available'] == 1
        assert home_summary['maybe'] == 1
        assert detail['my_availability'][0]['status'] == 'maybe'

    def test_availability_rejects_outsiders(self, login_as, confirmed, outsider):
        response = login_as(outsider).post(
            f'/matches/{confirmed.id}/availability',
            json={'team_id': confirmed.home_team_id, 'status': 'available'},
        )
        assert response.status_code == 403

    def test_start_before_kickoff_is_400(self, login_as, confirmed, home_captain):
        response = login_as(home_captain).post(f'/matches/{confirmed.id}/start')

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Cannot start a match before its scheduled time'

    def test_score_after_kickoff(self, login_as, confirmed, home_captain, away_captain):
        """Score route completes a match that has been started"""
        lifecycle.start_match(confirmed.id, home_captain, now=confirmed.scheduled_at)
        confirmed.scheduled_at = current_time() - timedelta(hours=2)
        db.session.commit()

        response = login_as(away_captain).post(
            f'/matches/{confirmed.id}/score', json={'home_score': 0, 'away_score': 2}
        )

        assert response.status_code == 200
        payload = response.get_json()
        assert payload['status'] == 'completed'
        assert (payload['home_score'], payload['away_score']) == (0, 2)

    def test_score_before_start_is_409(self, login_as, confirmed, home_captain):
        response = login_as(home_captain).post(
            f'/matches/{confirmed.id}/score', json={'home_score': 1, 'away_score': 0}
        )
        assert response.status_code == 409

    def test_cancel_by_away_leader(self, login_as, confirmed, away_captain, home_captain):
        response = login_as(away_captain).post(f'/matches/{confirmed.id}/cancel')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'cancelled'
        assert Notification.query.filter_by(user_id=home_captain.id, type='match_cancelled').count() == 1

        response = login_as(away_captain).post(f'/matches/{confirmed.id}/cancel')
        assert response.status_code == 409

    def test_leader_contacts(self, login_as, confirmed, home_captain, away_captain, home_players):
        home_captain.phone_number = '+44 7700 900111'
        db.session.commit()

        payload = login_as(away_captain).get(f'/matches/{confirmed.id}/leaders').get_json()
        assert payload['home_leaders'] == [
            {'id': home_captain.id, 'name': 'Hannah Home', 'phone_number': '+44 7700 900111', 'role': 'captain'}
        ]
        assert payload['away_leaders'][0]['id'] == away_captain.id

        payload = login_as(home_players[0]).get(f'/matches/{confirmed.id}/leaders').get_json()
        assert payload == {'home_leaders': [], 'away_leaders': []}

    def test_lineup_route(self, login_as, confirmed, away_captain, away_players, home_captain):
        client = login_as(away_captain)
        response = client.put(
            f'/matches/{confirmed.id}/lineup',
            json={
                'team_id': confirmed.away_team_id,
                'players': [
                    {'user_id': away_captain.id, 'position': 'goalkeeper'},
                    {'user_id': away_players[0].id, 'position': 'forward'},
                ],
            },
        )

        assert response.status_code == 200
        assert [entry['name'] for entry in response.get_json()] == ['Arlo Away', 'Ada Away']

        detail = login_as(home_captain).get(f'/matches/{confirmed.id}').get_json()
        assert len(detail['lineups'][str(confirmed.away_team_id)]) == 2
        assert detail['lineups'][str(confirmed.home_team_id)] == []

        response = login_as(home_captain).put(
            f'/matches/{confirmed.id}/lineup',
            json={'team_id': confirmed.away_team_id, 'players': [{'user_id': home_captain.id}]},
        )
        assert response.status_code == 403

    def test_event_routes(self, login_as, confirmed, home_captain, home_players, away_captain):
        client = login_as(home_captain)
        response = client.post(
            f'/matches/{confirmed.id}/events', json={'team_id': confirmed.home_team_id, 'event_type': 'goal'}
        )
        assert response.status_code == 409

        lifecycle.start_match(confirmed.id, home_captain, now=confirmed.scheduled_at)
        response = client.post(
            f'/matches/{confirmed.id}/events',
            json={
                'team_id': confirmed.home_team_id,
                'event_type': 'goal',
                'user_id': home_players[0].id,
                'minute': 12,
            },
        )
        assert response.status_code == 201
        event = response.get_json()
        assert event['player'] == 'Hugo Home'
        assert event['label'] == 'Goal'

        detail = client.get(f'/matches/{confirmed.id}').get_json()
        assert [e['id'] for e in detail['events']] == [event['id']]

        response = login_as(away_captain).delete(f"/matches/{confirmed.id}/events/{event['id']}")
        assert response.status_code == 403

        response = login_as(home_captain).delete(f"/matches/{confirmed.id}/events/{event['id']}")
        assert response.status_code == 200
        assert response.get_json() == {'deleted': event['id']}
