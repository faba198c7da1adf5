from concurrent.futures import ThreadPoolExecutor
import json
import sqlite3

import pytest

from contract_inbox.db import InboxDB
from contract_inbox.models import (
    Contract,
    HiddenMark,
    Inbox,
    InboxFilters,
    LearningPolicy,
    PersonalState,
)


def _inbox(inbox_id="inbox-1", **fields):
    return Inbox(
        id=inbox_id,
        name=fields.pop("name", "Cloud work"),
        prompt=fields.pop("prompt", "cloud hosting"),
        created_at="2024-01-01T00:00:00+00:00",
        updated_at="2024-01-01T00:00:00+00:00",
        **fields,
    )


def _raw(db, sql, params=()):
    conn = sqlite3.connect(str(db.db_path))
    try:
        with conn:
            return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


class TestContracts:
    def test_embedding_round_trip(self, db, contracts):
        db.upsert_contracts(contracts)

        stored = db.get_contract("c-mid")

        assert stored.title == "Data centre migration"
        assert stored.embedding == pytest.approx([0.8, 0.6, 0.0])
        assert db.get_contract("c-none").embedding is None
        assert [contract.id for contract in db.list_contracts()] == [contract.id for contract in contracts]

    def test_upsert_without_vector_keeps_stored_embedding(self, db, contracts):
        db.upsert_contracts(contracts)
        db.upsert_contracts([Contract(id="c-high", title="Renamed", embedding=None)])

        stored = db.get_contract("c-high")

        assert stored.title == "Renamed"
        assert stored.embedding == pytest.approx([1.0, 0.0, 0.0])

    def test_partial_embedding_reads_as_absent(self, db, contracts):
        db.upsert_contracts(contracts)
        _raw(db, "UPDATE contracts SET embedding_dim = 5 WHERE id = 'c-high'")

        assert db.get_contract("c-high").embedding is None

    def test_save_embedding_and_missing_list(self, db, contracts):
        db.upsert_contracts(contracts)
        assert [contract.id for contract in db.list_contracts_missing_embeddings()] == ["c-none"]

        db.save_contract_embedding("c-none", "Office furniture", [0.0, 0.0, 1.0])

        assert db.list_contracts_missing_embeddings() == []
        with pytest.raises(KeyError):
            db.save_contract_embedding("unknown", "text", [1.0])

    def test_get_contracts_batch(self, db, contracts):
        db.upsert_contracts(contracts)

        found = db.get_contracts(["c-high", "c-low", "missing", "c-high"])

        assert sorted(found) == ["c-high", "c-low"]


class TestInboxes:
    def test_policy_and_filters_persist(self, db):
        policy = LearningPolicy(inbox_id="inbox-1", total_feedback=4, dynamic_min_score=50, authority_boosts={"NHS": 3})
        db.create_inbox(_inbox(filters=InboxFilters(value_max=1000.0, authorities=("NHS",)), learning_policy=policy))

        stored = db.get_inbox("inbox-1")

        assert stored.filters == InboxFilters(value_max=1000.0, authorities=("NHS",))
        assert stored.learning_policy.to_dict() == policy.to_dict()

    def test_legacy_policy_fields_take_defaults(self, db):
        db.create_inbox(_inbox())
        _raw(db, "UPDATE inboxes SET learning_policy = ? WHERE id = 'inbox-1'", (json.dumps({"total_feedback": 3}),))

        policy = db.get_inbox("inbox-1").learning_policy

        assert policy.inbox_id == "inbox-1"
        assert policy.total_feedback == 3
        assert policy.dynamic_min_score == 30
        assert policy.authority_boosts == {}
        assert policy.max_irrelevance_score == 100

    def test_unreadable_policy_reads_as_missing(self, db):
        db.create_inbox(_inbox())
        _raw(db, "UPDATE inboxes SET learning_policy = 'not json' WHERE id = 'inbox-1'")

        assert db.get_inbox("inbox-1").learning_policy is None

    def test_out_of_range_cutoff_is_clamped_on_read(self, db):
        db.create_inbox(_inbox())
        _raw(db, "UPDATE inboxes SET learning_policy = ? WHERE id = 'inbox-1'", (json.dumps({"dynamic_min_score": 95}),))

        assert db.get_inbox("inbox-1").learning_policy.dynamic_min_score == 70

    def test_schema_init_is_repeatable(self, db):
        db.create_inbox(_inbox())

        reopened = InboxDB(db.db_path)

        assert reopened.get_inbox("inbox-1").name == "Cloud work"

    def test_all_contracts_lookup(self, db):
        db.create_inbox(_inbox("regular"))
        assert db.find_all_contracts_inbox() is None

        db.create_inbox(_inbox("everything", prompt="", is_all_contracts=True))

        assert db.find_all_contracts_inbox().id == "everything"


class TestFeedbackLedger:
    def test_append_preserves_order_per_inbox(self, db, make_event):
        for index in range(3):
            db.append_feedback(make_event("saved", 50 + index, index=index))
        db.append_feedback(make_event("hidden", 90, index=9, inbox_id="other"))

        events = db.list_feedback("inbox-1")

        assert [event.match_score for event in events] == [50.0, 51.0, 52.0]
        assert len(db.list_feedback("other")) == 1

    def test_clear_only_touches_one_inbox(self, db, make_event):
        db.append_feedback(make_event("saved", 50, index=0))
        db.append_feedback(make_event("saved", 50, index=1, inbox_id="other"))

        assert db.clear_inbox_feedback("inbox-1") == 1
        assert db.list_feedback("inbox-1") == []
        assert len(db.list_feedback("other")) == 1


class TestHiddenState:
    def test_legacy_global_flag_is_migrated_on_read(self, db):
        _raw(
            db,
            "INSERT INTO contract_hidden_state (contract_id, payload, updated_at) VALUES (?, ?, ?)",
            ("c-1", json.dumps({"is_hidden": True, "hidden_by": "someone"}), "2024-01-01"),
        )

        state = db.get_hidden_state("c-1")

        assert state.hidden_in_inboxes == []
        stored = json.loads(_raw(db, "SELECT payload FROM contract_hidden_state WHERE contract_id = 'c-1'")[0][0])
        assert stored == {"hidden_in_inboxes": [], "hidden_metadata": {}}

    def test_corrupt_payload_reads_as_visible(self, db):
        _raw(
            db,
            "INSERT INTO contract_hidden_state (contract_id, payload, updated_at) VALUES (?, ?, ?)",
            ("c-1", "{broken", "2024-01-01"),
        )

        assert db.get_hidden_state("c-1").hidden_in_inboxes == []

    def test_hidden_is_per_inbox(self, db):
        mark = HiddenMark(hidden_at="2024-01-01", hidden_by="tester", hidden_reason="Wrong region")
        db.hide_in_inbox("c-1", "inbox-a", mark)

        assert db.hidden_contract_ids("inbox-a") == {"c-1"}
        assert db.hidden_contract_ids("inbox-b") == set()
        assert db.get_hidden_state("c-1").hidden_metadata["inbox-a"].hidden_reason == "Wrong region"

    def test_restore_only_touches_one_inbox(self, db):
        db.hide_in_inbox("c-1", "inbox-a", HiddenMark(hidden_at="2024-01-01"))
        db.hide_in_inbox("c-1", "inbox-b", HiddenMark(hidden_at="2024-01-02"))

        state = db.restore_in_inbox("c-1", "inbox-a")

        assert state.hidden_in_inboxes == ["inbox-b"]
        assert db.get_hidden_state("c-1").hidden_in_inboxes == ["inbox-b"]

    def test_concurrent_hides_keep_every_mark(self, db):
        inbox_ids = [f"inbox-{index}" for index in range(12)]

        def hide(inbox_id):
            return db.hide_in_inbox("c-1", inbox_id, HiddenMark(hidden_at="2024-01-01"))

        with ThreadPoolExecutor(max_workers=6) as pool:
            list(pool.map(hide, inbox_ids))

        assert sorted(db.get_hidden_state("c-1").hidden_in_inboxes) == sorted(inbox_ids)

    def test_teardown_removes_marks(self, db):
        db.hide_in_inbox("c-1", "inbox-a", HiddenMark(hidden_at="2024-01-01"))
        db.hide_in_inbox("c-1", "inbox-b", HiddenMark(hidden_at="2024-01-01"))

        assert db.remove_inbox_from_hidden_states("inbox-a") == 1
        assert db.get_hidden_state("c-1").hidden_in_inboxes == ["inbox-b"]


class TestSavedAndPersonalState:
    def test_saved_is_global_per_contract(self, db):
        first = db.set_saved("c-1", saved_by="alice")
        again = db.set_saved("c-1", saved_by="bob")

        assert again.saved_by == "alice"
        assert again.saved_at == first.saved_at
        assert db.clear_saved("c-1") is True
        assert db.get_saved_state("c-1") is None

    def test_personal_state_defaults_and_is_per_user(self, db):
        assert db.get_personal_state("c-1", "alice") == PersonalState(contract_id="c-1", user_id="alice")

        db.save_personal_state(PersonalState(contract_id="c-1", user_id="alice", is_unread=False, is_new=False))

        assert db.get_personal_state("c-1", "alice").is_unread is False
        assert db.get_personal_state("c-1", "bob").is_unread is True
        assert db.read_contract_ids("alice") == {"c-1"}
        assert db.read_contract_ids("bob") == set()


def test_stats_counts(db, contracts, make_event):
    db.upsert_contracts(contracts)
    db.append_feedback(make_event("saved", 50))

    stats = db.stats()

    assert stats["contract_count"] == 5
    assert stats["embedding_count"] == 4
    assert stats["feedback_count"] == 1
