import logging
from types import SimpleNamespace

import pytest

from mevrelay.housekeeper import (
    SLOTS_PER_EPOCH,
    STATS_FIELD_LATEST_SLOT,
    Housekeeper,
    HousekeeperOpts,
    ProposerDuty,
    ProposerDutyEntry,
    ServerAlreadyStartedError,
    slot_pos,
)


class FakeBeacon:
    def __init__(self, duties=None, head_slot=0, events=(), fail_epochs=(), fail_sync=False):
        self.duties = duties or {}
        self.head = head_slot
        self.events = list(events)
        self.fail_epochs = set(fail_epochs)
        self.fail_sync = fail_sync
        self.requested = []

    def best_sync_status(self):
        if self.fail_sync:
            raise ConnectionError("no beacon node")
        return SimpleNamespace(head_slot=self.head)

    def get_proposer_duties(self, epoch):
        self.requested.append(epoch)
        if epoch in self.fail_epochs:
            raise ConnectionError("beacon failure")
        return self.duties.get(epoch, [])

    def subscribe_to_head_events(self, events):
        for slot in self.events:
            events.put(SimpleNamespace(slot=slot))
        events.put(None)


class FakeRegistration:
    def __init__(self, pubkey, timestamp=0, broken=False):
        self.pubkey = pubkey
        self.timestamp = timestamp
        self.broken = broken

    def to_signed_validator_registration(self):
        if self.broken:
            raise ValueError("bad registration")
        return ("signed", self.pubkey)


class FakeDB:
    def __init__(self, registrations=(), fail=False):
        self.registrations = {r.pubkey: r for r in registrations}
        self.fail = fail

    def get_validator_registrations_for_pubkeys(self, pubkeys):
        if self.fail:
            raise RuntimeError("db down")
        return [self.registrations[p] for p in pubkeys if p in self.registrations]

    def get_latest_validator_registrations(self, timestamp_only):
        if self.fail:
            raise RuntimeError("db down")
        return list(self.registrations.values())


class FakeRedis:
    def __init__(self, fail_duties=False, fail_stats=False, fail_pubkeys=()):
        self.stats = {}
        self.stats_calls = 0
        self.duties_calls = []
        self.timestamps = {}
        self.fail_duties = fail_duties
        self.fail_stats = fail_stats
        self.fail_pubkeys = set(fail_pubkeys)

    def set_stats(self, field, value):
        self.stats_calls += 1
        if self.fail_stats:
            raise RuntimeError("redis down")
        self.stats[field] = value

    def set_proposer_duties(self, duties):
        if self.fail_duties:
            raise RuntimeError("redis down")
        self.duties_calls.append(list(duties))

    def set_validator_registration_timestamp_if_newer(self, pubkey, timestamp):
        if pubkey in self.fail_pubkeys:
            raise RuntimeError("redis down")
        if timestamp > self.timestamps.get(pubkey, -1):
            self.timestamps[pubkey] = timestamp


def run_now(func, *args):
    func(*args)


def make(beacon=None, db=None, redis=None):
    beacon = beacon or FakeBeacon()
    db = db or FakeDB()
    redis = redis or FakeRedis()
    hk = Housekeeper(HousekeeperOpts(redis=redis, db=db, beacon_client=beacon, spawn=run_now))
    return hk, beacon, db, redis


EPOCH = 2
HEAD = EPOCH * SLOTS_PER_EPOCH


def standard_duties():
    return {
        EPOCH: [ProposerDuty("0xaa", HEAD, 10), ProposerDuty("0xbb", HEAD + 1, 11)],
        EPOCH + 1: [ProposerDuty("0xcc", HEAD + SLOTS_PER_EPOCH, 12)],
    }


def test_slot_pos_range():
    assert slot_pos(0) == 1
    assert slot_pos(SLOTS_PER_EPOCH - 1) == SLOTS_PER_EPOCH
    assert slot_pos(SLOTS_PER_EPOCH) == slot_pos(0)


def test_duties_include_only_registered_validators_of_both_epochs():
    hk, beacon, _, redis = make(
        beacon=FakeBeacon(duties=standard_duties()),
        db=FakeDB([FakeRegistration("0xaa"), FakeRegistration("0xcc")]),
    )
    result = hk.update_proposer_duties_without_checks(HEAD)
    expected = [
        ProposerDutyEntry(HEAD, 10, ("signed", "0xaa")),
        ProposerDutyEntry(HEAD + SLOTS_PER_EPOCH, 12, ("signed", "0xcc")),
    ]
    assert result == expected
    assert redis.duties_calls == [expected]
    assert beacon.requested[1] == beacon.requested[0] + 1
    assert hk.proposer_duties_slot == HEAD


def test_next_epoch_failure_still_saves_current_epoch():
    hk, _, _, redis = make(
        beacon=FakeBeacon(duties=standard_duties(), fail_epochs={EPOCH + 1}),
        db=FakeDB([FakeRegistration("0xaa"), FakeRegistration("0xcc")]),
    )
    hk.update_proposer_duties_without_checks(HEAD)
    assert redis.duties_calls == [[ProposerDutyEntry(HEAD, 10, ("signed", "0xaa"))]]


def test_current_epoch_failure_saves_nothing():
    hk, _, _, redis = make(
        beacon=FakeBeacon(duties=standard_duties(), fail_epochs={EPOCH}),
        db=FakeDB([FakeRegistration("0xaa")]),
    )
    assert hk.update_proposer_duties_without_checks(HEAD) is None
    assert redis.duties_calls == []
    assert hk.proposer_duties_slot == 0


def test_database_failure_saves_nothing():
    hk, _, _, redis = make(beacon=FakeBeacon(duties=standard_duties()), db=FakeDB(fail=True))
    assert hk.update_proposer_duties_without_checks(HEAD) is None
    assert redis.duties_calls == []


def test_broken_registration_is_skipped():
    hk, _, _, redis = make(
        beacon=FakeBeacon(duties=standard_duties()),
        db=FakeDB([FakeRegistration("0xaa", broken=True), FakeRegistration("0xbb")]),
    )
    hk.update_proposer_duties_without_checks(HEAD)
    assert redis.duties_calls == [[ProposerDutyEntry(HEAD + 1, 11, ("signed", "0xbb"))]]


def test_redis_failure_keeps_previous_duties_slot():
    hk, _, _, _ = make(
        beacon=FakeBeacon(duties=standard_duties()),
        db=FakeDB([FakeRegistration("0xaa")]),
        redis=FakeRedis(fail_duties=True),
    )
    assert hk.update_proposer_duties_without_checks(HEAD) is None
    assert hk.proposer_duties_slot == 0


def test_update_proposer_duties_skips_recent_updates():
    hk, _, _, redis = make(beacon=FakeBeacon(duties=standard_duties()))
    hk.update_proposer_duties(HEAD)
    hk.update_proposer_duties(HEAD + 1)
    assert len(redis.duties_calls) == 1
    assert hk.proposer_duties_slot == HEAD


def test_update_proposer_duties_runs_after_half_epoch():
    hk, _, _, redis = make(beacon=FakeBeacon(duties=standard_duties()))
    hk.update_proposer_duties(HEAD)
    later = HEAD + SLOTS_PER_EPOCH // 2 + 1
    hk.update_proposer_duties(later)
    assert len(redis.duties_calls) == 2
    assert hk.proposer_duties_slot == later


def test_update_proposer_duties_runs_on_half_epoch_boundary():
    hk, _, _, redis = make(beacon=FakeBeacon(duties=standard_duties()))
    hk.update_proposer_duties(HEAD)
    boundary = HEAD + SLOTS_PER_EPOCH // 2
    hk.update_proposer_duties(boundary)
    assert hk.proposer_duties_slot == boundary
    assert len(redis.duties_calls) == 2


def test_process_new_slot_ignores_old_slots():
    hk, _, _, redis = make()
    hk.process_new_slot(HEAD)
    hk.process_new_slot(HEAD - 1)
    hk.process_new_slot(HEAD)
    assert hk.head_slot == HEAD
    assert redis.stats[STATS_FIELD_LATEST_SLOT] == HEAD
    assert redis.stats_calls == 1


def test_process_new_slot_logs_missed_slots(caplog):
    hk, _, _, _ = make()
    with caplog.at_level(logging.WARNING, logger="mevrelay.housekeeper"):
        hk.process_new_slot(HEAD)
        hk.process_new_slot(HEAD + 3)
    assert f"missed slot: {HEAD + 1}" in caplog.text
    assert f"missed slot: {HEAD + 2}" in caplog.text
    assert f"missed slot: {HEAD + 3}" not in caplog.text


def test_process_new_slot_survives_stats_failure():
    hk, _, _, redis = make(redis=FakeRedis(fail_stats=True))
    hk.process_new_slot(HEAD)
    assert hk.head_slot == HEAD
    assert redis.stats == {}


def test_update_validator_registrations_lowercases_and_continues():
    regs = [FakeRegistration("0xAB", timestamp=5), FakeRegistration("0xcd", timestamp=7)]
    hk, _, _, redis = make(db=FakeDB(regs), redis=FakeRedis(fail_pubkeys={"0xab"}))
    hk.update_validator_registrations_in_redis()
    assert redis.timestamps == {"0xcd": 7}


def test_update_validator_registrations_db_failure():
    hk, _, _, redis = make(db=FakeDB([FakeRegistration("0xaa", 3)], fail=True))
    hk.update_validator_registrations_in_redis()
    assert redis.timestamps == {}


def test_start_processes_head_and_events():
    beacon = FakeBeacon(duties=standard_duties(), head_slot=HEAD, events=[HEAD + 1, HEAD + 2])
    hk, _, _, redis = make(beacon=beacon, db=FakeDB([FakeRegistration("0xaa", 9)]))
    hk.start()
    assert hk.head_slot == HEAD + 2
    assert redis.stats[STATS_FIELD_LATEST_SLOT] == HEAD + 2
    assert redis.timestamps == {"0xaa": 9}


def test_start_can_run_again_after_finishing():
    beacon = FakeBeacon(head_slot=HEAD, events=[HEAD + 1])
    hk, _, _, _ = make(beacon=beacon)
    hk.start()
    beacon.events = [HEAD + 5]
    hk.start()
    assert hk.head_slot == HEAD + 5


def test_start_propagates_sync_error():
    hk, _, _, redis = make(beacon=FakeBeacon(fail_sync=True))
    with pytest.raises(ConnectionError):
        hk.start()
    assert redis.stats_calls == 0


def test_start_while_running_raises():
    holder = {}

    class ReentrantBeacon(FakeBeacon):
        def subscribe_to_head_events(self, events):
            with pytest.raises(ServerAlreadyStartedError) as info:
                holder["hk"].start()
            holder["error"] = info.value
            events.put(None)

    hk, _, _, redis = make(beacon=ReentrantBeacon(head_slot=HEAD))
    holder["hk"] = hk
    hk.start()
    assert str(holder["error"]) == "server was already started"
    assert hk.head_slot == HEAD
    assert redis.stats_calls == 1