"""Tests for the asset audit log."""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, make_asset, make_user
from fleethub.models.models import AssetLog, as_utc
from fleethub.services import audit


@pytest.fixture
def asset(db):
    owner = make_user(db, role="admin")
    return make_asset(db, owner, mileage=100, year=2018, state="WA")


class TestComputeDiff:

    def test_only_changed_fields(self):
        before = {"name": "Truck 1", "mileage": 100, "state": "WA"}
        after = {"name": "Truck 1", "mileage": 150, "state": "WA"}
        assert audit.compute_diff(before, after) == {"mileage": {"from": 100, "to": 150}}

    def test_untracked_fields_ignored(self):
        assert audit.compute_diff({"version": 1}, {"version": 2}) == {}

    def test_field_set_from_none(self):
        assert audit.compute_diff({"color": None}, {"color": "red"}) == {"color": {"from": None, "to": "red"}}


class TestRecord:

    def test_identical_update_writes_nothing(self, db, asset):
        snap = audit.snapshot(asset)
        assert audit.record(db, asset.id, None, audit.ACTION_UPDATED, snap, dict(snap)) is None
        assert db.query(AssetLog).count() == 0

    def test_update_records_changed_fields_only(self, db, asset):
        before = audit.snapshot(asset)
        after = dict(before, mileage=150)
        entry = audit.record(db, asset.id, None, audit.ACTION_UPDATED, before, after)
        assert entry.changed_fields == {"mileage": {"from": 100, "to": 150}}
        assert entry.old_values == {"mileage": 100}
        assert entry.new_values == {"mileage": 150}

    def test_created_entry_has_full_snapshot(self, db, asset):
        entry = audit.record(db, asset.id, asset.owner_id, audit.ACTION_CREATED, None, audit.snapshot(asset), actor_role="admin")
        assert entry.changed_fields is None
        assert entry.new_values["name"] == "Truck 1"
        assert entry.new_values["vin"] == "1HT"
        assert entry.actor_role == "admin"

    def test_unknown_action_rejected(self, db, asset):
        with pytest.raises(ValueError):
            audit.record(db, asset.id, None, "deleted", None, {})

    def test_store_failure_is_swallowed(self, db, asset, monkeypatch):
        def boom():
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", boom)
        before = audit.snapshot(asset)
        assert audit.record(db, asset.id, None, audit.ACTION_UPDATED, before, dict(before, mileage=1)) is None


class TestIntegrity:

    def test_written_entry_verifies(self, db, asset):
        entry = audit.record(db, asset.id, None, audit.ACTION_CREATED, None, audit.snapshot(asset), occurred_at=NOW)
        assert audit.verify_integrity(entry)

    def test_tampered_entry_fails(self, db, asset):
        before = audit.snapshot(asset)
        entry = audit.record(db, asset.id, None, audit.ACTION_UPDATED, before, dict(before, mileage=150), occurred_at=NOW)
        entry.new_values = {"mileage": 1}
        assert not audit.verify_integrity(entry)

    def test_other_secret_fails(self, db, asset):
        entry = audit.record(db, asset.id, None, audit.ACTION_CREATED, None, audit.snapshot(asset))
        assert not audit.verify_integrity(entry, secret="someone-else")


class TestQueries:

    def _update(self, db, asset, mileage, when):
        before = audit.snapshot(asset)
        return audit.record(db, asset.id, None, audit.ACTION_UPDATED, before, dict(before, mileage=mileage), occurred_at=when)

    def test_logs_newest_first_and_filtered(self, db, asset):
        audit.record(db, asset.id, None, audit.ACTION_CREATED, None, audit.snapshot(asset), occurred_at=NOW - timedelta(days=3))
        self._update(db, asset, 200, NOW - timedelta(days=2))
        self._update(db, asset, 300, NOW - timedelta(days=1))

        logs = audit.list_asset_logs(db, asset.id)
        assert [e.action for e in logs] == ["updated", "updated", "created"]
        assert logs[0].new_values == {"mileage": 300}
        assert len(audit.list_asset_logs(db, asset.id, action=audit.ACTION_CREATED)) == 1

    def test_latest_update_timestamps_batched(self, db, asset):
        other = make_asset(db, make_user(db, role="admin"), name="Van 2")
        never = make_asset(db, make_user(db, role="admin"), name="Van 3")
        self._update(db, asset, 200, NOW - timedelta(days=2))
        self._update(db, asset, 300, NOW - timedelta(days=1))
        self._update(db, other, 50, NOW - timedelta(days=5))

        latest = audit.latest_update_timestamps(db, [asset.id, other.id, never.id])
        assert latest == {asset.id: NOW - timedelta(days=1), other.id: NOW - timedelta(days=5)}

    def test_latest_update_ignores_created(self, db, asset):
        audit.record(db, asset.id, None, audit.ACTION_CREATED, None, audit.snapshot(asset), occurred_at=NOW)
        assert audit.latest_update_for_asset(db, asset.id) is None
        self._update(db, asset, 200, NOW - timedelta(hours=1))
        assert as_utc(audit.latest_update_for_asset(db, asset.id).occurred_at) == NOW - timedelta(hours=1)

    def test_empty_id_list(self, db):
        assert audit.latest_update_timestamps(db, []) == {}
