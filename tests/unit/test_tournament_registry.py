"""
Unit tests for TournamentRegistry class.
Tests: create_tournament, get_tournament, list_tournaments, update_tournament,
       start/complete transitions, delete_tournament, get_participants
"""
from datetime import datetime

import pytest

from arena.errors import PersistenceError
from arena.tournament_registry import LEDGER_UNAVAILABLE, TournamentRegistry
from shared.events import EventType


class TestCreateTournament:
    """Tests for create_tournament method."""

    def test_create_defaults(self, registry, store):
        """New tournaments start upcoming with an empty roster."""
        tournament = registry.create_tournament(title='  Verdansk Night  ')

        assert tournament.id.startswith('t_')
        assert tournament.title == 'Verdansk Night'
        assert tournament.status == 'upcoming'
        assert tournament.participants == []
        assert tournament.max_participants == 100
        assert tournament.tournament_type == 'BATTLE ROYALE'
        assert store.get_tournament(tournament.id) is not None

    def test_unique_ids(self, registry):
        ids = {registry.create_tournament(title=f'Cup {i}').id for i in range(10)}
        assert len(ids) == 10

    def test_parses_start_time(self, registry):
        tournament = registry.create_tournament(title='Cup', starts_at='2026-03-01T18:00:00Z')
        assert tournament.starts_at == datetime(2026, 3, 1, 18, 0)

    @pytest.mark.parametrize('fields', [
        {'title': ''},
        {'title': 'Cup', 'entry_fee': -1},
        {'title': 'Cup', 'prize': 2.5},
        {'title': 'Cup', 'max_participants': 0},
        {'title': 'Cup', 'max_participants': True},
        {'title': 'Cup', 'starts_at': 'next tuesday'},
    ])
    def test_invalid_fields_rejected(self, registry, store, fields):
        with pytest.raises(ValueError):
            registry.create_tournament(**fields)
        assert store.list_tournaments() == []

    @pytest.mark.parametrize('fields', [
        {'title': 123},
        {'title': ['Cup']},
        {'title': 'Cup', 'map_name': 7},
        {'title': 'Cup', 'description': {'text': 'x'}},
    ])
    def test_non_text_fields_rejected(self, registry, store, fields):
        """Should raise ValueError, not fail on string methods."""
        with pytest.raises(ValueError, match='text'):
            registry.create_tournament(**fields)
        assert store.list_tournaments() == []

    def test_store_failure_propagates(self, registry, store, events, mocker):
        mocker.patch.object(store, '_begin', side_effect=PersistenceError('down'))

        with pytest.raises(PersistenceError):
            registry.create_tournament(title='Cup')
        assert events == []

    def test_emits_created_event(self, registry, events):
        tournament = registry.create_tournament(title='Cup')

        assert len(events) == 1
        assert events[0].type == EventType.TOURNAMENT_CREATED
        assert events[0].tournament_id == tournament.id


class TestCachedReads:
    """Tests for get_tournament and list_tournaments."""

    def test_get_unknown(self, registry):
        assert registry.get_tournament('t_missing') is None

    def test_get_served_from_cache(self, registry, store, cache, sample_tournament, mocker):
        registry.get_tournament(sample_tournament.id)
        spy = mocker.spy(store, 'get_tournament')

        assert registry.get_tournament(sample_tournament.id).title == 'Rebirth Island Showdown'
        spy.assert_not_called()

    def test_cache_invalidated_after_registration(self, registry, service, sample_tournament, make_user):
        """A committed roster change should be visible on the next read."""
        make_user('alice')
        assert registry.get_tournament(sample_tournament.id).participants == []

        service.register(sample_tournament.id, 'alice')

        assert registry.get_tournament(sample_tournament.id).participants == ['alice']
        assert registry.list_tournaments()[0].participants == ['alice']

    def test_expired_entry_reloaded(self, registry, store, clock, sample_tournament, mocker):
        registry.get_tournament(sample_tournament.id)
        clock.advance(301)
        spy = mocker.spy(store, 'get_tournament')

        registry.get_tournament(sample_tournament.id)
        spy.assert_called_once_with(sample_tournament.id)

    def test_list_filters_by_status(self, registry):
        first = registry.create_tournament(title='A')
        registry.create_tournament(title='B')
        registry.start_tournament(first.id)

        assert [t.id for t in registry.list_tournaments(status='active')] == [first.id]
        assert len(registry.list_tournaments(status='upcoming')) == 1
        assert len(registry.list_tournaments()) == 2

    def test_works_without_cache(self, store):
        registry = TournamentRegistry(store)
        tournament = registry.create_tournament(title='Cup')
        assert registry.get_tournament(tournament.id).id == tournament.id


class TestUpdateTournament:
    """Tests for update_tournament method."""

    def test_update_descriptive_fields(self, registry, sample_tournament, events):
        success, _ = registry.update_tournament(
            sample_tournament.id, title='Finals', map_name='VERDANSK', prize=5000
        )

        assert success is True
        updated = registry.get_tournament(sample_tournament.id)
        assert updated.title == 'Finals'
        assert updated.map_name == 'VERDANSK'
        assert updated.prize == 5000
        assert events[-1].type == EventType.TOURNAMENT_UPDATED

    def test_unknown_tournament(self, registry):
        assert registry.update_tournament('t_missing', title='X') == (False, 'Tournament not found')

    @pytest.mark.parametrize('title', [123, None, ['Finals']])
    def test_non_text_title_rejected(self, registry, sample_tournament, title):
        success, message = registry.update_tournament(sample_tournament.id, title=title)

        assert success is False
        assert message == 'Tournament title must be text'
        assert registry.get_tournament(sample_tournament.id).title == 'Rebirth Island Showdown'

    def test_store_failure_reported(self, registry, store, sample_tournament, mocker):
        mocker.patch.object(store, '_begin', side_effect=PersistenceError('down'))

        assert registry.update_tournament(sample_tournament.id, title='X') == (False, LEDGER_UNAVAILABLE)

    def test_unknown_field_rejected(self, registry, sample_tournament):
        success, message = registry.update_tournament(sample_tournament.id, participants=['x'])
        assert success is False
        assert 'participants' in message

    def test_capacity_not_below_roster(self, registry, service, sample_tournament, make_user):
        make_user('alice')
        make_user('bob')
        service.register(sample_tournament.id, 'alice')
        service.register(sample_tournament.id, 'bob')

        success, message = registry.update_tournament(sample_tournament.id, max_participants=1)

        assert success is False
        assert 'Capacity' in message
        assert registry.update_tournament(sample_tournament.id, max_participants=5)[0] is True

    def test_fee_locked_once_paid(self, registry, service, sample_tournament, make_user):
        """Changing the fee after someone paid would break refunds."""
        make_user('alice')
        service.register(sample_tournament.id, 'alice')

        success, message = registry.update_tournament(sample_tournament.id, entry_fee=50)

        assert success is False
        assert 'Entry fee' in message

    def test_fee_change_on_empty_upcoming(self, registry, sample_tournament):
        assert registry.update_tournament(sample_tournament.id, entry_fee=50)[0] is True

    def test_completed_not_editable(self, registry, sample_tournament):
        registry.start_tournament(sample_tournament.id)
        registry.complete_tournament(sample_tournament.id)

        success, message = registry.update_tournament(sample_tournament.id, title='Late edit')
        assert success is False
        assert 'completed' in message


class TestTransitions:
    """Tests for start_tournament and complete_tournament."""

    def test_start_and_complete(self, registry, sample_tournament, events):
        assert registry.start_tournament(sample_tournament.id) == (True, 'Tournament is now active')
        assert registry.complete_tournament(sample_tournament.id) == (True, 'Tournament is now completed')
        assert registry.get_tournament(sample_tournament.id).status == 'completed'
        assert [e.type for e in events[-2:]] == [EventType.TOURNAMENT_UPDATED] * 2

    def test_cannot_complete_upcoming(self, registry, sample_tournament):
        success, message = registry.complete_tournament(sample_tournament.id)
        assert success is False
        assert 'upcoming' in message

    def test_cannot_restart(self, registry, sample_tournament):
        registry.start_tournament(sample_tournament.id)
        assert registry.start_tournament(sample_tournament.id)[0] is False

    def test_missing(self, registry):
        assert registry.start_tournament('t_missing') == (False, 'Tournament not found')


class TestDeleteTournament:
    """Tests for delete_tournament method."""

    def test_delete_refunds_participants(self, registry, service, store, sample_tournament, make_user, events):
        """Every participant gets the fee back and loses the enrollment."""
        make_user('alice', balance=200)
        make_user('bob', balance=100)
        service.register(sample_tournament.id, 'alice')
        service.register(sample_tournament.id, 'bob')

        assert registry.delete_tournament(sample_tournament.id) == (True, 'Tournament deleted')

        assert store.get_tournament(sample_tournament.id) is None
        assert registry.get_tournament(sample_tournament.id) is None
        assert store.get_user('alice').balance == 200
        assert store.get_user('bob').balance == 100
        assert store.get_user('alice').enrolled == []
        assert events[-1].type == EventType.TOURNAMENT_DELETED
        assert events[-1].tournament_id == sample_tournament.id

    def test_active_cannot_be_deleted(self, registry, sample_tournament):
        registry.start_tournament(sample_tournament.id)

        success, message = registry.delete_tournament(sample_tournament.id)
        assert success is False
        assert 'active' in message

    def test_missing(self, registry):
        assert registry.delete_tournament('t_missing') == (False, 'Tournament not found')


class TestParticipants:
    """Tests for get_participants method."""

    def test_join_order(self, registry, service, sample_tournament, make_user):
        make_user('bob')
        make_user('alice')
        service.register(sample_tournament.id, 'bob')
        service.register(sample_tournament.id, 'alice')

        assert [u.id for u in registry.get_participants(sample_tournament.id)] == ['bob', 'alice']

    def test_missing(self, registry):
        assert registry.get_participants('t_missing') is None
