import json

import pytest

from contract_inbox.errors import EmbeddingUnavailable, MissingCollectionContext

PROMPT = "cloud hosting"


def _ids(results):
    return [result.contract.id for result in results]


class TestFeedbackRoundTrip:
    def test_recorded_event_is_reflected_in_counters(self, seeded_service, inbox):
        before = seeded_service.recompute_policy(inbox.id)

        seeded_service.record_feedback(inbox.id, "c-high", "saved", 100)
        after_save = seeded_service.recompute_policy(inbox.id)
        seeded_service.record_feedback(inbox.id, "c-mid", "hidden", 80, hide_reason="Too small")
        after_hide = seeded_service.recompute_policy(inbox.id)
        seeded_service.record_feedback(inbox.id, "c-low", "viewed", 50, view_duration=4.5)
        after_view = seeded_service.recompute_policy(inbox.id)

        assert after_save.total_feedback == before.total_feedback + 1
        assert after_save.saved_count == before.saved_count + 1
        assert after_hide.total_feedback == after_save.total_feedback + 1
        assert after_hide.hidden_count == after_save.hidden_count + 1
        assert after_view.total_feedback == after_hide.total_feedback + 1
        assert after_view.viewed_count == after_hide.viewed_count + 1

    def test_recompute_is_persisted(self, seeded_service, inbox):
        seeded_service.record_feedback(inbox.id, "c-high", "saved", 90)

        policy = seeded_service.recompute_policy(inbox.id)

        stored = seeded_service.get_inbox(inbox.id).learning_policy
        assert json.dumps(stored.to_dict(), sort_keys=True) == json.dumps(policy.to_dict(), sort_keys=True)

    def test_save_and_hide_recompute_synchronously(self, seeded_service, inbox):
        seeded_service.save_contract("c-high", inbox_id=inbox.id, match_score=100)
        seeded_service.hide_contract("c-far", inbox_id=inbox.id, match_score=35, reason="Not IT work at all")

        policy = seeded_service.get_inbox(inbox.id).learning_policy

        assert policy.saved_count == 1
        assert policy.hidden_count == 1
        assert policy.min_relevance_score == 90
        assert policy.max_irrelevance_score == 40

    def test_view_records_without_recompute(self, seeded_service, inbox):
        seeded_service.mark_read("c-high", inbox_id=inbox.id, match_score=100, view_duration=12.0)

        assert seeded_service.get_inbox(inbox.id).learning_policy.total_feedback == 0
        assert seeded_service.feedback_stats(inbox.id)["viewed"] == 1

    def test_submitted_judgements_recompute_but_views_do_not(self, seeded_service, inbox):
        viewed = seeded_service.submit_feedback(inbox.id, "c-low", "viewed", 50)
        hidden = seeded_service.submit_feedback(inbox.id, "c-mid", "hidden", 80, hide_reason="Defence work")

        assert viewed["learning_policy"] is None
        assert hidden["learning_policy"]["total_feedback"] == 2
        assert seeded_service.get_inbox(inbox.id).learning_policy.hidden_count == 1


class TestValidation:
    def test_feedback_without_inbox_is_rejected(self, seeded_service):
        with pytest.raises(MissingCollectionContext):
            seeded_service.record_feedback(None, "c-high", "saved", 90)
        with pytest.raises(MissingCollectionContext):
            seeded_service.record_feedback("   ", "c-high", "saved", 90)
        with pytest.raises(MissingCollectionContext):
            seeded_service.record_feedback("no-such-inbox", "c-high", "saved", 90)

    def test_save_with_bad_inbox_leaves_state_untouched(self, seeded_service):
        with pytest.raises(MissingCollectionContext):
            seeded_service.save_contract("c-high", inbox_id="", match_score=90)

        assert seeded_service.contract_state("c-high")["saved"] is None

    def test_hide_requires_inbox(self, seeded_service):
        with pytest.raises(MissingCollectionContext):
            seeded_service.hide_contract("c-high", inbox_id=None, match_score=90)

    @pytest.mark.parametrize("score", [-1, 100.5, "high", None, float("nan")])
    def test_score_out_of_range(self, seeded_service, inbox, score):
        with pytest.raises(ValueError):
            seeded_service.record_feedback(inbox.id, "c-high", "saved", score)

    def test_unknown_action(self, seeded_service, inbox):
        with pytest.raises(ValueError, match="action must be one of"):
            seeded_service.record_feedback(inbox.id, "c-high", "liked", 50)

    def test_unknown_contract(self, seeded_service, inbox):
        with pytest.raises(KeyError):
            seeded_service.save_contract("missing", inbox_id=inbox.id, match_score=50)


class TestRanking:
    def test_ranks_by_similarity_and_excludes_unembedded(self, seeded_service, inbox):
        results = seeded_service.rank_for_inbox(inbox.id)

        assert [(result.contract.id, result.match_score) for result in results] == [
            ("c-high", 100),
            ("c-mid", 80),
            ("c-low", 50),
        ]
        assert all(result.explanation_deferred for result in results)

    def test_inbox_embedding_is_cached(self, seeded_service, inbox, embedder):
        seeded_service.rank_for_inbox(inbox.id)
        seeded_service.rank_for_inbox(inbox.id)

        assert embedder.calls == [PROMPT]
        assert seeded_service.get_inbox(inbox.id).embedding == pytest.approx([1.0, 0.0, 0.0])

    def test_prompt_change_drops_cached_embedding(self, seeded_service, inbox):
        seeded_service.rank_for_inbox(inbox.id)

        updated = seeded_service.update_inbox(inbox.id, prompt="data centre hosting")

        assert updated.embedding is None
        assert updated.prompt == "data centre hosting"

    def test_embedding_failure_propagates(self, seeded_service, inbox):
        with pytest.raises(EmbeddingUnavailable):
            seeded_service.rank_for_inbox(inbox.id, query_text="something unknown")

    def test_hidden_in_one_inbox_is_visible_in_another(self, seeded_service, inbox):
        other = seeded_service.create_inbox(name="Also cloud", prompt=PROMPT)

        seeded_service.hide_contract("c-mid", inbox_id=inbox.id, match_score=80, reason="Defence work")

        assert "c-mid" not in _ids(seeded_service.rank_for_inbox(inbox.id))
        assert "c-mid" in _ids(seeded_service.rank_for_inbox(other.id))
        assert "c-mid" in _ids(seeded_service.rank_for_inbox(inbox.id, include_hidden=True))

    def test_unhide_restores(self, seeded_service, inbox):
        seeded_service.hide_contract("c-mid", inbox_id=inbox.id, match_score=80)
        seeded_service.unhide_contract("c-mid", inbox_id=inbox.id)

        assert "c-mid" in _ids(seeded_service.rank_for_inbox(inbox.id))

    def test_inbox_filters_apply_and_can_be_overridden(self, seeded_service):
        filtered = seeded_service.create_inbox(name="Small", prompt=PROMPT, filters={"value_max": 100000})

        assert _ids(seeded_service.rank_for_inbox(filtered.id)) == ["c-mid", "c-low"]
        assert _ids(seeded_service.rank_for_inbox(filtered.id, filters={"authorities": ["nhs digital"]})) == ["c-high"]

    def test_live_cutoff_prefilters(self, seeded_service, inbox):
        seeded_service.set_live_threshold(inbox.id, 60)

        assert _ids(seeded_service.rank_for_inbox(inbox.id)) == ["c-high", "c-mid"]

    def test_unread_count_tracks_personal_state(self, seeded_service, inbox):
        seeded_service.rank_for_inbox(inbox.id)
        assert seeded_service.get_inbox(inbox.id).unread_count == 3

        seeded_service.mark_read("c-high")
        seeded_service.rank_for_inbox(inbox.id)
        assert seeded_service.get_inbox(inbox.id).unread_count == 2

        seeded_service.mark_unread("c-high")
        seeded_service.rank_for_inbox(inbox.id)
        assert seeded_service.get_inbox(inbox.id).unread_count == 3

    def test_read_state_is_per_user(self, seeded_service, inbox):
        seeded_service.mark_read("c-high", user_id="alice")
        seeded_service.rank_for_inbox(inbox.id, user_id="bob")

        assert seeded_service.get_inbox(inbox.id).unread_count == 3


class TestLiveThreshold:
    def test_override_is_clamped_and_persisted(self, seeded_service, inbox):
        policy = seeded_service.set_live_threshold(inbox.id, 85)

        assert policy.dynamic_min_score == 70
        assert seeded_service.get_inbox(inbox.id).learning_policy.dynamic_min_score == 70

    def test_override_survives_recompute(self, seeded_service, inbox):
        seeded_service.set_live_threshold(inbox.id, 25)
        seeded_service.save_contract("c-high", inbox_id=inbox.id, match_score=100)

        policy = seeded_service.recompute_policy(inbox.id)

        assert policy.dynamic_min_score == 30
        seeded_service.set_live_threshold(inbox.id, 55)
        assert seeded_service.recompute_policy(inbox.id).dynamic_min_score == 55

    def test_non_numeric_threshold(self, seeded_service, inbox):
        with pytest.raises(ValueError):
            seeded_service.set_live_threshold(inbox.id, "high")


class TestAllContractsInbox:
    def test_default_inbox_is_created_once(self, seeded_service):
        first = seeded_service.ensure_default_inbox()
        second = seeded_service.ensure_default_inbox()

        assert first.id == second.id
        assert first.name == "All Contracts"
        with pytest.raises(ValueError):
            seeded_service.create_inbox(name="Everything", is_all_contracts=True)

    def test_every_contract_scores_100(self, seeded_service, embedder):
        everything = seeded_service.ensure_default_inbox()

        results = seeded_service.rank_for_inbox(everything.id)

        assert sorted(_ids(results)) == ["c-far", "c-high", "c-low", "c-mid", "c-none"]
        assert {result.match_score for result in results} == {100}
        assert embedder.calls == []

    def test_feedback_never_updates_policy(self, seeded_service):
        everything = seeded_service.ensure_default_inbox()
        for _ in range(12):
            seeded_service.hide_contract("c-far", inbox_id=everything.id, match_score=100)

        policy = seeded_service.recompute_policy(everything.id)

        assert policy.total_feedback == 0
        assert policy.dynamic_min_score == 30
        assert seeded_service.get_inbox(everything.id).learning_policy.total_feedback == 0
        with pytest.raises(ValueError):
            seeded_service.set_live_threshold(everything.id, 50)


class TestFailSafeRecompute:
    def test_analyzer_failure_keeps_cached_policy(self, seeded_service, inbox, monkeypatch):
        seeded_service.save_contract("c-high", inbox_id=inbox.id, match_score=100)
        cached = seeded_service.get_inbox(inbox.id).learning_policy

        def broken(*args, **kwargs):
            raise ValueError("analyzer exploded")

        monkeypatch.setattr("contract_inbox.service.analyze_feedback_patterns", broken)
        seeded_service.record_feedback(inbox.id, "c-mid", "hidden", 80)

        returned = seeded_service.recompute_policy(inbox.id)

        assert returned.to_dict() == cached.to_dict()
        assert seeded_service.get_inbox(inbox.id).learning_policy.to_dict() == cached.to_dict()


class TestStateStores:
    def test_saved_is_global_across_inboxes(self, seeded_service, inbox):
        seeded_service.save_contract("c-high", inbox_id=inbox.id, match_score=100, user_id="alice")

        state = seeded_service.contract_state("c-high", user_id="bob")

        assert state["saved"]["saved_by"] == "alice"
        assert state["personal"]["is_unread"] is True
        assert state["hidden"]["hidden_in_inboxes"] == []

        seeded_service.unsave_contract("c-high")
        assert seeded_service.contract_state("c-high")["saved"] is None

    def test_delete_inbox_tears_down_feedback_and_marks(self, seeded_service, inbox):
        seeded_service.hide_contract("c-mid", inbox_id=inbox.id, match_score=80)
        seeded_service.record_feedback(inbox.id, "c-high", "viewed", 100)

        summary = seeded_service.delete_inbox(inbox.id)

        assert summary["feedback_removed"] == 2
        assert summary["hidden_marks_cleared"] == 1
        assert seeded_service.contract_state("c-mid")["hidden"]["hidden_in_inboxes"] == []
        with pytest.raises(KeyError):
            seeded_service.get_inbox(inbox.id)


def test_learning_status_for_new_inbox(seeded_service, inbox):
    status = seeded_service.learning_status(inbox.id)

    assert status["stage"] == "no_feedback"
    assert status["threshold_stage_enabled"] is False
    assert status["offer_prompt_refinement"] is False


def test_precompute_embeddings_fills_missing_vectors(seeded_service, embedder):
    embedder.vectors["Office furniture\n\nDesks and chairs"] = [0.0, 0.0, 1.0]

    summary = seeded_service.precompute_embeddings()

    assert summary == {"embedded": 1, "failed": 0, "remaining": 0}
    assert seeded_service.get_contract("c-none").embedding == pytest.approx([0.0, 0.0, 1.0])


def test_precompute_reports_failures(seeded_service):
    summary = seeded_service.precompute_embeddings()

    assert summary == {"embedded": 0, "failed": 1, "remaining": 1}


def test_remote_features_need_an_api_key(seeded_service, inbox):
    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        seeded_service.explain_match(inbox.id, "c-high")


def test_create_inbox_validation(seeded_service):
    with pytest.raises(ValueError):
        seeded_service.create_inbox(name="", prompt=PROMPT)
    with pytest.raises(ValueError):
        seeded_service.create_inbox(name="No prompt", prompt="  ")
    with pytest.raises(ValueError):
        seeded_service.create_inbox(name="Bad range", prompt=PROMPT, filters={"value_min": 10, "value_max": 5})
