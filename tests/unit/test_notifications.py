"""
Unit tests for change events and notification emitters.
"""
import json
import threading

import pytest

from shared.events import (
    Event,
    EventType,
    registration_event,
    tournament_deleted_event,
    unregistration_event
)
from shared.notifications import (
    GLOBAL_CHANNEL,
    BackgroundEmitter,
    LocalEmitter,
    NotificationEmitter,
    RedisNotificationEmitter
)


TOURNAMENT = {'id': 't_1', 'title': 'Cup', 'participants': ['alice'], 'participant_count': 1}


class TestEvent:
    """Tests for Event serialization."""

    def test_registration_message_shape(self):
        """Registration messages carry the tournament snapshot and user."""
        message = registration_event(TOURNAMENT, 'alice').to_dict()

        assert message['type'] == 'tournament_registration'
        assert message['tournament'] == TOURNAMENT
        assert message['tournamentId'] == 't_1'
        assert message['userId'] == 'alice'
        assert message['timestamp'].endswith('Z')

    def test_deleted_message_omits_snapshot(self):
        message = tournament_deleted_event('t_9').to_dict()

        assert message['type'] == 'tournament_deleted'
        assert message['tournamentId'] == 't_9'
        assert 'tournament' not in message
        assert 'userId' not in message

    def test_to_json_matches_dict(self):
        """The wire payload is the JSON encoding of to_dict."""
        event = unregistration_event(TOURNAMENT, 'bob')

        assert json.loads(event.to_json()) == event.to_dict()
        assert json.loads(event.to_json())['type'] == 'tournament_unregistration'


class TestLocalEmitter:
    """Tests for LocalEmitter."""

    def test_delivers_to_all_handlers(self):
        emitter = LocalEmitter()
        first, second = [], []
        emitter.subscribe(first.append)
        emitter.subscribe(second.append)

        event = tournament_deleted_event('t_1')
        emitter.emit(event)

        assert first == [event]
        assert second == [event]

    def test_failing_handler_isolated(self):
        """One broken listener must not stop delivery to the rest."""
        emitter = LocalEmitter()
        received = []

        def broken(event):
            raise RuntimeError("socket closed")

        emitter.subscribe(broken)
        emitter.subscribe(received.append)
        emitter.emit(tournament_deleted_event('t_1'))

        assert len(received) == 1

    def test_unsubscribe(self):
        emitter = LocalEmitter()
        received = []
        emitter.subscribe(received.append)
        emitter.unsubscribe(received.append)
        emitter.unsubscribe(received.append)

        emitter.emit(tournament_deleted_event('t_1'))
        assert received == []


class TestRedisNotificationEmitter:
    """Tests for RedisNotificationEmitter with a mocked client."""

    @pytest.fixture
    def client(self, mocker):
        return mocker.MagicMock()

    def test_publishes_global_and_tournament_channels(self, client):
        emitter = RedisNotificationEmitter(redis_client=client)
        event = registration_event(TOURNAMENT, 'alice')

        emitter.emit(event)

        assert client.publish.call_count == 2
        channels = [c.args[0] for c in client.publish.call_args_list]
        assert channels == [GLOBAL_CHANNEL, 'tournament:t_1:events']
        payload = json.loads(client.publish.call_args_list[0].args[1])
        assert payload['type'] == 'tournament_registration'
        assert payload['userId'] == 'alice'

    def test_publishes_global_only_without_tournament(self, client):
        emitter = RedisNotificationEmitter(redis_client=client)
        emitter.emit(Event(type=EventType.TOURNAMENT_CREATED))

        client.publish.assert_called_once()
        assert client.publish.call_args.args[0] == GLOBAL_CHANNEL

    def test_builds_client_from_url(self, mocker):
        from_url = mocker.patch('shared.notifications.redis.from_url')

        emitter = RedisNotificationEmitter(redis_url='redis://cache:6379')

        assert emitter.redis is from_url.return_value
        assert from_url.call_args.args[0] == 'redis://cache:6379'


class TestBackgroundEmitter:
    """Tests for BackgroundEmitter."""

    def test_delivers_on_worker_thread(self):
        delivered = threading.Event()
        threads = []

        class Recorder(NotificationEmitter):
            def emit(self, event):
                threads.append(threading.current_thread().name)
                delivered.set()

        emitter = BackgroundEmitter(Recorder())
        emitter.emit(tournament_deleted_event('t_1'))

        assert delivered.wait(5)
        emitter.close()
        assert threads[0].startswith('notify')

    def test_inner_failure_is_logged_not_raised(self, mocker):
        inner = mocker.Mock(spec=NotificationEmitter)
        inner.emit.side_effect = ConnectionError("redis down")

        emitter = BackgroundEmitter(inner)
        emitter.emit(tournament_deleted_event('t_1'))
        emitter.close()

        inner.emit.assert_called_once()
        inner.close.assert_called_once()
