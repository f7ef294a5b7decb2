import json
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import redis

from broadcast import RedisViewPublisher
from config import EngineSettings
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from models import EntryStatus
from services import QueueService, mask_name


def test_subscriber_gets_current_view_then_updates(service, recorder):
    service.register_arrival({"name": "Ada"})
    service.subscribe(recorder)

    assert [e.token for e in recorder.last.entries] == [1]

    service.register_arrival({"name": "Bea"})
    assert len(recorder.views) == 2
    assert [e.token for e in recorder.last.entries] == [1, 2]


def test_rejected_operations_do_not_broadcast(service, recorder):
    service.register_arrival({"name": "Ada"})
    service.subscribe(recorder)

    with pytest.raises(ValidationError):
        service.register_arrival({"name": ""})
    with pytest.raises(ConflictError):
        service.end_consult(1)
    with pytest.raises(NotFoundError):
        service.start_consult(7)

    assert len(recorder.views) == 1


def test_consult_flow_updates_view_and_average(service, recorder, clock):
    service.set_doctor_presence(True)
    service.register_arrival({"name": "Ada", "estConsultMin": 10})
    service.register_arrival({"name": "Bea", "estConsultMin": 15})
    service.subscribe(recorder)

    service.start_consult(1)
    clock.advance(minutes=5)
    view = service.get_view()
    start = view.entries[0].start_time
    assert view.entries[1].eta == start + timedelta(minutes=5)

    clock.advance(minutes=7)
    result = service.end_consult(1)

    assert result.duration_min == 12
    assert result.average_consult_minutes == 9
    assert recorder.last.average_consult_minutes == 9
    assert recorder.last.entries[0].status == EntryStatus.done
    # nobody in consult and doctor present: the next patient is due now
    assert recorder.last.entries[1].eta == clock.now


def test_doctor_presence_is_published(service, recorder):
    service.subscribe(recorder)
    assert service.set_doctor_presence(True) is True
    assert recorder.last.doctor_present is True


def test_reset_day(service, recorder, clock):
    service.set_doctor_presence(True)
    service.register_arrival({"name": "Ada"})
    service.start_consult(1)
    clock.advance(minutes=30)
    service.end_consult(1)
    service.subscribe(recorder)

    service.reset_day()

    view = recorder.last
    assert view.entries == []
    assert view.average_consult_minutes == 8
    assert view.doctor_present is False
    # history survives the day rollover
    assert len(service.consult_history()) == 1
    assert service.register_arrival({"name": "Next day"}).token == 1


def test_concurrent_registrations_publish_every_entry(service, recorder):
    service.subscribe(recorder)

    with ThreadPoolExecutor(max_workers=8) as pool:
        tokens = list(pool.map(lambda i: service.register_arrival({"name": f"p{i}"}).token, range(50)))

    assert sorted(tokens) == list(range(1, 51))
    assert len(recorder.last.entries) == 50
    assert recorder.last.version == service.store.version


def test_only_one_concurrent_start_wins(service):
    service.register_arrival({"name": "Ada"})

    def attempt(_):
        try:
            service.start_consult(1)
            return "started"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(attempt, range(16)))

    assert outcomes.count("started") == 1
    assert outcomes.count("conflict") == 15


def test_permissive_policy_from_settings(clock):
    service = QueueService(EngineSettings(consult_policy="permissive"), clock=clock)
    service.register_arrival({"name": "Ada"})
    service.register_arrival({"name": "Bea"})
    service.start_consult(1)
    service.start_consult(2)
    statuses = [e.status for e in service.get_view().entries]
    assert statuses == [EntryStatus.in_consult, EntryStatus.in_consult]


def test_reopen_and_no_show(clock):
    service = QueueService(EngineSettings(allow_reopen=True), clock=clock)
    service.register_arrival({"name": "Ada"})
    service.register_arrival({"name": "Bea"})
    service.start_consult(1)
    clock.advance(minutes=4)
    service.end_consult(1)

    assert service.reopen_consult(1).status == EntryStatus.in_consult
    assert service.mark_no_show(2).status == EntryStatus.no_show


def test_search_masks_names_matched_by_name_only(service):
    service.register_arrival({"name": "Margaret Smith", "phone": "+44 7700 900123"})
    service.register_arrival({"name": "Jo"})

    [by_name] = service.search("MARG")
    assert "name" not in by_name
    assert by_name["nameMasked"] == "M***et"
    assert by_name["token"] == 1

    [by_phone] = service.search("7700")
    assert by_phone["name"] == "Margaret Smith"
    assert by_phone["nameMasked"] == "Margaret Smith"

    assert service.search("   ") == []
    assert service.search("zzz") == []


def test_search_is_capped(service):
    for i in range(15):
        service.register_arrival({"name": f"Sam {i}"})
    assert len(service.search("sam")) == 10


def test_mask_name():
    assert mask_name("Margaret Smith") == "M***et"
    assert mask_name("Ann") == "Ann"


def test_persistence_failure_is_surfaced_after_commit(settings, clock, recorder):
    snapshots = MagicMock()
    snapshots.save.side_effect = PersistenceError("disk full")
    service = QueueService(settings, snapshot_store=snapshots, clock=clock)
    service.subscribe(recorder)

    with pytest.raises(PersistenceError):
        service.register_arrival({"name": "Ada"})

    assert service.get_entry(1).name == "Ada"
    assert [e.token for e in recorder.last.entries] == [1]


def test_redis_relay_is_attached_from_settings(clock):
    client = MagicMock()
    with patch("broadcast.redis.from_url", return_value=client):
        service = QueueService.from_settings(EngineSettings(redis_url="redis://localhost:6379/0"))

    assert len(service.relays) == 1
    service.register_arrival({"name": "Ada"})
    service.relays[0].flush(timeout=2)
    _, message = client.publish.call_args.args
    assert [e["token"] for e in json.loads(message)["data"]["entries"]] == [1]


def test_unreachable_redis_keeps_service_running():
    client = MagicMock()
    client.ping.side_effect = redis.ConnectionError("refused")
    with patch("broadcast.redis.from_url", return_value=client):
        service = QueueService.from_settings(EngineSettings(redis_url="redis://nowhere:6379/0"))

    assert service.relays == []
    assert service.register_arrival({"name": "Ada"}).token == 1


def test_slow_redis_does_not_hold_up_changes(service, recorder):
    client = MagicMock()
    client.publish.side_effect = lambda *args: time.sleep(1)
    relay = RedisViewPublisher(client)
    service.add_relay(relay)
    service.subscribe(recorder)

    started = time.monotonic()
    service.register_arrival({"name": "Ada"})
    service.set_doctor_presence(True)
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert recorder.last.doctor_present is True
    relay.flush(timeout=5)
    _, message = client.publish.call_args.args
    assert json.loads(message)["data"]["doctorPresent"] is True


def test_request_for_current_view_is_resent(service, recorder):
    service.register_arrival({"name": "Ada"})
    service.subscribe(recorder)

    assert service.resend_view(recorder) is True
    assert len(recorder.views) == 2
    assert recorder.views[0].version == recorder.views[1].version
