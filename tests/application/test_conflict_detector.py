from __future__ import annotations

from dataclasses import replace

import pytest

from omnisync.application.conflict_detector import ConflictDetector, merge_versions, resolve_conflict
from omnisync.domain.sync_models import SyncConflict, SyncQueueItem
from tests.utilidades.fakes import FakeClock

BASE = "2025-03-01T09:00:00+00:00"
LATER = "2025-03-01T09:05:00+00:00"
EARLIER = "2025-03-01T08:55:00+00:00"


def _detector(policy: str = "versioned") -> ConflictDetector:
    return ConflictDetector(policy, clock=FakeClock(), id_factory=lambda: "c-1")  # type: ignore[arg-type]


def _update(**overrides) -> SyncQueueItem:
    values = {
        "id": "q-1",
        "operation": "update",
        "resource_type": "order",
        "resource_id": "ord-1",
        "created_at": "2025-03-01T09:01:00+00:00",
        "payload": {"status": "shipped", "updatedAt": "2025-03-01T09:01:00+00:00"},
        "base_version": BASE,
        "base_fields": {"status": "pending"},
    }
    values.update(overrides)
    return SyncQueueItem(**values)


def test_overlapping_remote_change_after_base_is_a_conflict() -> None:
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": LATER}

    conflict = _detector().detect(_update(), remote, {"id": "ord-1", "status": "pending", "total": 10})

    assert conflict is not None
    assert conflict.fields == ("status",)
    assert conflict.queue_item_id == "q-1"
    assert conflict.remote_version == remote
    assert conflict.local_version["status"] == "shipped"
    assert conflict.local_version["total"] == 10
    assert conflict.remote_timestamp == LATER


def test_remote_change_on_other_fields_is_not_a_conflict() -> None:
    remote = {"id": "ord-1", "status": "pending", "notes": "llamar", "updatedAt": LATER}

    assert _detector().detect(_update(), remote) is None


def test_remote_older_than_base_is_not_a_conflict() -> None:
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": EARLIER}

    assert _detector().detect(_update(), remote) is None


def test_missing_base_version_falls_back_to_last_write_wins() -> None:
    item = _update(base_version=None, base_fields=None)
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": LATER}

    assert _detector().detect(item, remote) is None


def test_update_of_remotely_deleted_record_is_always_a_conflict() -> None:
    for policy in ("versioned", "last-write-wins"):
        conflict = _detector(policy).detect(_update(), None)

        assert conflict is not None
        assert conflict.remote_deleted is True
        assert conflict.fields == ("status",)


def test_last_write_wins_ignores_newer_remote() -> None:
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": LATER}

    assert _detector("last-write-wins").detect(_update(), remote) is None


def test_delete_against_newer_remote_is_a_conflict_without_local_version() -> None:
    item = _update(operation="delete", payload=None, base_fields=None)
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": LATER}

    conflict = _detector().detect(item, remote)

    assert conflict is not None
    assert conflict.local_version is None
    assert _detector().detect(item, {**remote, "updatedAt": EARLIER}) is None


def test_create_colliding_with_different_remote_record_is_a_conflict() -> None:
    item = _update(operation="create", payload={"id": "ord-1", "total": 10, "createdAt": BASE}, base_version=None)

    conflict = _detector().detect(item, {"id": "ord-1", "total": 99, "createdAt": EARLIER})

    assert conflict is not None
    assert conflict.fields == ("total",)
    assert _detector().detect(item, {"id": "ord-1", "total": 10}) is None


def test_create_replay_against_own_normalised_write_is_not_a_conflict() -> None:
    payload = {"id": "ord-1", "total": 10, "items": [{"sku": "A-1", "quantity": 2}], "updatedAt": BASE}
    item = _update(operation="create", payload=payload, base_version=None, base_fields=None)
    stored = {
        "id": "ord-1",
        "total": 10.0,
        "items": [{"id": "item-1", "sku": "A-1", "quantity": 2}],
        "updatedAt": "2025-03-01T09:00:00Z",
    }

    assert _detector().detect(item, stored) is None


def test_create_against_record_edited_after_it_is_a_conflict() -> None:
    payload = {"id": "ord-1", "total": 10, "items": [], "updatedAt": BASE}
    item = _update(operation="create", payload=payload, base_version=None, base_fields=None)

    conflict = _detector().detect(item, {"id": "ord-1", "total": 12, "items": [{"sku": "B"}], "updatedAt": LATER})

    assert conflict is not None
    assert conflict.fields == ("total",)


def test_forced_items_skip_detection_and_remote_reads() -> None:
    detector = _detector()
    forced = _update(force=True)

    assert detector.needs_remote_state(forced) is False
    assert detector.detect(forced, None) is None


def test_needs_remote_state_depends_on_policy() -> None:
    create = _update(operation="create")

    assert _detector().needs_remote_state(create) is True
    assert _detector("last-write-wins").needs_remote_state(create) is False
    assert _detector("last-write-wins").needs_remote_state(_update()) is True


def test_timestamps_in_zulu_and_offset_forms_compare_equal() -> None:
    remote = {"id": "ord-1", "status": "cancelled", "updatedAt": "2025-03-01T09:00:00Z"}

    assert _detector().detect(_update(), remote) is None


def _conflict(**overrides) -> SyncConflict:
    values = {
        "id": "c-1",
        "resource_type": "order",
        "resource_id": "ord-1",
        "queue_item_id": "q-1",
        "operation": "update",
        "local_version": {"id": "ord-1", "status": "shipped", "notes": "local", "total": 5},
        "remote_version": {"id": "ord-1", "status": "cancelled", "notes": "remota", "updatedAt": LATER},
        "local_timestamp": "2025-03-01T09:10:00+00:00",
        "remote_timestamp": LATER,
        "detected_at": "2025-03-01T09:11:00+00:00",
        "fields": ("status",),
    }
    values.update(overrides)
    return SyncConflict(**values)


def test_resolve_manual_local_and_remote_strategies() -> None:
    conflict = _conflict()

    assert resolve_conflict(conflict, "manual").action == "manual"
    local = resolve_conflict(conflict, "local-wins")
    assert (local.action, local.state) == ("apply_local", conflict.local_version)
    remote = resolve_conflict(conflict, "remote-wins")
    assert (remote.action, remote.state) == ("keep_remote", conflict.remote_version)


def test_latest_wins_compares_local_and_remote_timestamps() -> None:
    newer_local = _conflict()
    older_local = replace(newer_local, local_timestamp=EARLIER)
    remote_gone = replace(newer_local, remote_version=None, remote_timestamp=None)

    assert resolve_conflict(newer_local, "latest-wins").action == "apply_local"
    assert resolve_conflict(older_local, "latest-wins").action == "keep_remote"
    assert resolve_conflict(remote_gone, "latest-wins").action == "manual"


@pytest.mark.parametrize(
    ("strategy", "action"),
    [
        ("latest-wins", "manual"),
        ("merge", "manual"),
        ("manual", "manual"),
        ("local-wins", "apply_local"),
        ("remote-wins", "keep_remote"),
    ],
)
def test_update_of_remotely_deleted_record_needs_explicit_policy(strategy: str, action: str) -> None:
    conflict = _conflict(remote_version=None, remote_timestamp=None)

    assert resolve_conflict(conflict, strategy).action == action  # type: ignore[arg-type]


def test_local_delete_wins_as_delete() -> None:
    conflict = _conflict(operation="delete", local_version=None)

    resolution = resolve_conflict(conflict, "local-wins")

    assert resolution.action == "apply_local"
    assert resolution.delete is True


def test_merge_keeps_remote_for_conflicting_fields_and_local_for_the_rest() -> None:
    merged = merge_versions(_conflict())

    assert merged == {"id": "ord-1", "status": "cancelled", "notes": "local", "total": 5, "updatedAt": LATER}
    assert resolve_conflict(_conflict(), "merge").state == merged
    assert resolve_conflict(_conflict(operation="delete", local_version=None), "merge").action == "keep_remote"


def test_unknown_strategy_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_conflict(_conflict(), "coin-flip")  # type: ignore[arg-type]
