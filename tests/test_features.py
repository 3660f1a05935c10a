import json

import pytest

from forgeline.errors import (
    DependencyError,
    DuplicateTitleError,
    FeatureNotFoundError,
    FeatureValidationError,
    IllegalTransitionError,
    WorktreeInUseError,
)
from forgeline.features import FeatureStore, slugify
from forgeline.state import FeatureStatus as S


def test_create_persists_pretty_json(store):
    f = store.create("Add verbose flag", description="CLI flag", priority=1)

    raw = store.json_path(f.id).read_text()
    assert raw.startswith("{\n  ")
    assert json.loads(raw)["title"] == "Add verbose flag"
    assert f.status == S.BACKLOG
    assert f.branch_name.startswith("forgeline/add-verbose-flag-")


def test_store_round_trips_through_a_fresh_instance(store, tmp_path):
    f = store.create("Add verbose flag")
    again = FeatureStore(tmp_path).get(f.id)
    assert again == f


def test_duplicate_titles_are_rejected_case_insensitively(store):
    store.create("Add verbose flag")
    with pytest.raises(DuplicateTitleError):
        store.create("add VERBOSE flag")


def test_blank_title_is_a_validation_error(store):
    with pytest.raises(FeatureValidationError):
        store.create("   ")


def test_unknown_fields_are_rejected(store):
    with pytest.raises(FeatureValidationError):
        store.create("Add verbose flag", status="verified")


def test_unknown_or_cyclic_dependencies_are_rejected(store):
    a = store.create("A")
    with pytest.raises(DependencyError):
        store.create("B", dependencies=["feature-nope"])

    b = store.create("B", dependencies=[a.id])
    with pytest.raises(DependencyError):
        store.update(a.id, dependencies=[b.id])
    with pytest.raises(DependencyError):
        store.update(a.id, dependencies=[a.id])


def test_update_cannot_touch_status(store):
    f = store.create("A")
    with pytest.raises(FeatureValidationError):
        store.update(f.id, status="verified")
    with pytest.raises(FeatureValidationError):
        store.patch(f.id, status="verified")


def test_transition_emits_and_replay_is_silent(store, events):
    f = store.create("A")
    store.transition(f.id, S.QUEUED)
    store.transition(f.id, S.QUEUED)

    changes = [e for e in events if e.event_type == "feature_status_changed"]
    assert len(changes) == 1
    assert changes[0].payload == {"from": "backlog", "to": "queued"}


def test_in_progress_requires_verified_dependencies(store):
    dep = store.create("Dep")
    child = store.create("Child", dependencies=[dep.id])
    store.transition(child.id, S.QUEUED)

    with pytest.raises(IllegalTransitionError) as exc:
        store.transition(child.id, S.IN_PROGRESS)
    assert dep.id in exc.value.message
    assert store.get(child.id).status == S.QUEUED


def test_two_features_cannot_share_a_worktree(store, tmp_path):
    a = store.create("A")
    b = store.create("B")
    shared = str(tmp_path / "wt")
    for f in (a, b):
        store.transition(f.id, S.QUEUED)
    store.transition(a.id, S.IN_PROGRESS, worktree_path=shared)

    with pytest.raises(WorktreeInUseError):
        store.transition(b.id, S.IN_PROGRESS, worktree_path=shared)


def test_torn_write_falls_back_to_backup(store):
    f = store.create("A")
    store.patch(f.id, summary="first")
    store.json_path(f.id).write_text("{ not json")

    assert store.get(f.id).title == "A"


def test_get_missing_raises(store):
    with pytest.raises(FeatureNotFoundError):
        store.get("feature-missing")


def test_delete_prunes_dependents(store, events):
    a = store.create("A")
    b = store.create("B", dependencies=[a.id])

    store.delete(a.id)

    assert store.get(b.id).dependencies == []
    assert not store.feature_dir(a.id).exists()
    assert "feature_deleted" in [e.event_type for e in events]


@pytest.mark.asyncio
async def test_bulk_delete_runs_in_batches(store):
    ids = [store.create(f"F{i}").id for i in range(5)]

    results = await store.bulk_delete(ids, batch_size=2)

    assert [r["feature_id"] for r in results] == ids
    assert all(r["success"] for r in results)
    assert store.list_features() == []


def test_agent_output_is_appended(store):
    f = store.create("A")
    store.append_output(f.id, "one")
    store.append_output(f.id, "two\n")
    store.append_raw(f.id, {"type": "result"})

    assert store.output_path(f.id).read_text() == "one\ntwo\n"
    assert json.loads(store.raw_output_path(f.id).read_text()) == {"type": "result"}


def test_slugify_bounds_and_fallback():
    assert slugify("Add a --verbose flag!") == "add-a-verbose-flag"
    assert slugify("!!!") == "feature"
    assert len(slugify("x" * 100)) <= 40
