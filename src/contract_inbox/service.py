"""Inbox service orchestrating feedback capture, policy recompute, and adaptive ranking."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
import logging
import math
import os
from pathlib import Path
from typing import Any, Iterable, Mapping
import uuid

from contract_inbox.db import InboxDB
from contract_inbox.errors import MissingCollectionContext
from contract_inbox.learning import (
    analyze_feedback_patterns,
    boost_stage_enabled,
    feedback_stats,
    learning_stage,
    learning_status,
    should_offer_prompt_refinement,
    threshold_stage_enabled,
)
from contract_inbox.models import (
    Contract,
    FeedbackAction,
    FeedbackEvent,
    HiddenMark,
    Inbox,
    InboxFilters,
    LearningPolicy,
    PersonalState,
    SearchResult,
    clamp_dynamic_score,
)
from contract_inbox.openai_utils import (
    OpenAIConfig,
    OpenAIEmbedder,
    api_key_configured,
    explain_match,
    make_client,
    refine_prompt_with_feedback,
)
from contract_inbox.ranking import AdaptiveRankingPipeline, Embedder


_LOGGER = logging.getLogger(__name__)
_CHAT_EXECUTOR = ThreadPoolExecutor(max_workers=2, thread_name_prefix="chat-call")

DEFAULT_INBOX_NAME = "All Contracts"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InboxService:
    def __init__(
        self,
        root_dir: Path | None = None,
        *,
        db: InboxDB | None = None,
        embedder: Embedder | None = None,
        default_user_id: str | None = None,
    ) -> None:
        self.root_dir = root_dir or Path(__file__).resolve().parents[2]
        if db is None:
            db_path = os.getenv("CI_DB_PATH", "").strip()
            db = InboxDB(Path(db_path) if db_path else self.root_dir / "data" / "contract_inbox.db")
        self.db = db

        self.cfg = OpenAIConfig.from_env()
        self.client = None
        self._embedder = embedder

        self.search_limit = self._env_int("CI_SEARCH_LIMIT", 1000)
        self.embed_timeout_seconds = self._env_timeout("CI_EMBED_TIMEOUT_SECONDS", 20.0)
        self.request_timeout_seconds = self._env_timeout("CI_OPENAI_TIMEOUT_SECONDS", 20.0)
        self.explanation_limit = self._env_int("CI_EXPLANATION_LIMIT", 10)
        self.embed_batch_size = self._env_int("CI_EMBED_BATCH_SIZE", 10)
        self.default_user_id = (
            default_user_id or os.getenv("CI_DEFAULT_USER_ID", "local-user").strip() or "local-user"
        )

    @property
    def ai_enabled(self) -> bool:
        return api_key_configured()

    def _ensure_client(self):
        if not self.ai_enabled:
            raise RuntimeError("OPENAI_API_KEY is not set.")
        if self.client is None:
            self.client = make_client()
        return self.client

    def _resolve_embedder(self) -> Embedder | None:
        if self._embedder is None and self.ai_enabled:
            self._embedder = OpenAIEmbedder(self._ensure_client(), model=self.cfg.embed_model)
        return self._embedder

    def _pipeline(self) -> AdaptiveRankingPipeline:
        return AdaptiveRankingPipeline(
            self._resolve_embedder(),
            timeout_seconds=self.embed_timeout_seconds,
            limit=self.search_limit,
            explanation_limit=self.explanation_limit,
        )

    @staticmethod
    def _env_timeout(name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
        return value if value > 0 else default

    @staticmethod
    def _env_int(name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return value if value > 0 else default

    def _run_with_timeout(self, operation: str, fn, timeout_seconds: float):
        safe_timeout = max(1.0, float(timeout_seconds))
        future = _CHAT_EXECUTOR.submit(fn)
        try:
            return future.result(timeout=safe_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise RuntimeError(f"{operation} timed out after {int(round(safe_timeout))}s.") from exc
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError(f"{operation} failed: {exc}") from exc

    @staticmethod
    def _validate_score(match_score: Any) -> float:
        try:
            score = float(match_score)
        except (TypeError, ValueError) as exc:
            raise ValueError("match_score must be a number between 0 and 100.") from exc
        if not math.isfinite(score) or score < 0 or score > 100:
            raise ValueError("match_score must be a number between 0 and 100.")
        return score

    @staticmethod
    def _coerce_filters(filters: InboxFilters | Mapping[str, Any] | None) -> InboxFilters:
        if filters is None:
            return InboxFilters()
        if isinstance(filters, InboxFilters):
            return filters
        return InboxFilters.from_dict(dict(filters))

    def _require_inbox(self, inbox_id: str) -> Inbox:
        inbox = self.db.get_inbox(str(inbox_id or "").strip())
        if inbox is None:
            raise KeyError("Inbox not found.")
        return inbox

    def _require_contract(self, contract_id: str) -> Contract:
        contract = self.db.get_contract(str(contract_id or "").strip())
        if contract is None:
            raise KeyError("Contract not found.")
        return contract

    # ---- inboxes ---------------------------------------------------------

    def create_inbox(
        self,
        *,
        name: str,
        prompt: str = "",
        filters: InboxFilters | Mapping[str, Any] | None = None,
        is_all_contracts: bool = False,
    ) -> Inbox:
        safe_name = str(name or "").strip()
        safe_prompt = str(prompt or "").strip()
        if not safe_name:
            raise ValueError("name is required.")
        if not safe_prompt and not is_all_contracts:
            raise ValueError("prompt is required.")
        if is_all_contracts and self.db.find_all_contracts_inbox() is not None:
            raise ValueError("An all-contracts inbox already exists.")

        timestamp = _utc_now()
        inbox_id = str(uuid.uuid4())
        inbox = Inbox(
            id=inbox_id,
            name=safe_name,
            prompt=safe_prompt,
            created_at=timestamp,
            updated_at=timestamp,
            is_all_contracts=bool(is_all_contracts),
            filters=self._coerce_filters(filters),
            learning_policy=LearningPolicy.bootstrap(inbox_id),
        )
        self.db.create_inbox(inbox)
        _LOGGER.info("Created inbox %s (%s).", inbox.id, inbox.name)
        return inbox

    def ensure_default_inbox(self) -> Inbox:
        existing = self.db.find_all_contracts_inbox()
        if existing is not None:
            return existing
        return self.create_inbox(name=DEFAULT_INBOX_NAME, is_all_contracts=True)

    def get_inbox(self, inbox_id: str) -> Inbox:
        return self._require_inbox(inbox_id)

    def list_inboxes(self) -> list[Inbox]:
        return self.db.list_inboxes()

    def update_inbox(
        self,
        inbox_id: str,
        *,
        name: str | None = None,
        prompt: str | None = None,
        filters: InboxFilters | Mapping[str, Any] | None = None,
    ) -> Inbox:
        inbox = self._require_inbox(inbox_id)
        safe_name = inbox.name if name is None else str(name).strip()
        if not safe_name:
            raise ValueError("name must not be empty.")

        safe_prompt = inbox.prompt
        embedding = inbox.embedding
        if prompt is not None:
            candidate = str(prompt).strip()
            if not candidate and not inbox.is_all_contracts:
                raise ValueError("prompt must not be empty.")
            if candidate != inbox.prompt:
                # The cached query vector belongs to the old prompt.
                safe_prompt = candidate
                embedding = None

        safe_filters = inbox.filters if filters is None else self._coerce_filters(filters)
        self.db.update_inbox_config(
            inbox.id,
            name=safe_name,
            prompt=safe_prompt,
            filters=safe_filters,
            embedding=embedding,
            prompt_refined_at=inbox.prompt_refined_at,
        )
        return self._require_inbox(inbox.id)

    def delete_inbox(self, inbox_id: str) -> dict[str, Any]:
        inbox = self._require_inbox(inbox_id)
        removed_events = self.db.clear_inbox_feedback(inbox.id)
        restored = self.db.remove_inbox_from_hidden_states(inbox.id)
        self.db.delete_inbox(inbox.id)
        _LOGGER.info(
            "Deleted inbox %s: %d feedback events removed, %d hidden marks cleared.",
            inbox.id,
            removed_events,
            restored,
        )
        return {"inbox_id": inbox.id, "feedback_removed": removed_events, "hidden_marks_cleared": restored}

    # ---- feedback and policy ----------------------------------------------

    def record_feedback(
        self,
        inbox_id: str | None,
        contract_id: str,
        action: FeedbackAction | str,
        match_score: Any,
        *,
        hide_reason: str | None = None,
        view_duration: float | None = None,
    ) -> FeedbackEvent:
        safe_inbox_id = str(inbox_id or "").strip()
        if not safe_inbox_id:
            _LOGGER.warning("Rejected feedback for contract %s without an inbox id.", contract_id)
            raise MissingCollectionContext("Feedback requires an inbox id.")
        if self.db.get_inbox(safe_inbox_id) is None:
            _LOGGER.warning("Rejected feedback for contract %s against unknown inbox %s.", contract_id, safe_inbox_id)
            raise MissingCollectionContext(f"Unknown inbox: {safe_inbox_id}")

        safe_contract_id = str(contract_id or "").strip()
        if not safe_contract_id:
            raise ValueError("contract_id is required.")
        safe_action = FeedbackAction.parse(action)
        score = self._validate_score(match_score)

        duration = None
        if view_duration is not None:
            duration = float(view_duration)
            if not math.isfinite(duration) or duration < 0:
                raise ValueError("view_duration must be a non-negative number.")

        event = FeedbackEvent(
            id=str(uuid.uuid4()),
            inbox_id=safe_inbox_id,
            contract_id=safe_contract_id,
            action=safe_action,
            match_score=score,
            created_at=_utc_now(),
            hide_reason=(hide_reason or "").strip() or None,
            view_duration=duration,
        )
        self.db.append_feedback(event)
        _LOGGER.info(
            "Recorded %s feedback for contract %s in inbox %s at score %.0f.",
            safe_action.value,
            safe_contract_id,
            safe_inbox_id,
            score,
        )
        return event

    def submit_feedback(
        self,
        inbox_id: str | None,
        contract_id: str,
        action: FeedbackAction | str,
        match_score: Any,
        *,
        hide_reason: str | None = None,
        view_duration: float | None = None,
    ) -> dict[str, Any]:
        event = self.record_feedback(
            inbox_id,
            contract_id,
            action,
            match_score,
            hide_reason=hide_reason,
            view_duration=view_duration,
        )
        policy = None
        if event.action in (FeedbackAction.SAVED, FeedbackAction.HIDDEN):
            policy = self.recompute_policy(event.inbox_id)
        return {
            "feedback": event.to_dict(),
            "learning_policy": policy.to_dict() if policy else None,
        }

    def recompute_policy(self, inbox_id: str) -> LearningPolicy:
        inbox = self._require_inbox(inbox_id)
        if inbox.is_all_contracts:
            # The all-contracts inbox has no query, so its feedback says nothing about relevance.
            return LearningPolicy.bootstrap(inbox.id)

        try:
            events = self.db.list_feedback(inbox.id)
            contracts = self.db.get_contracts(event.contract_id for event in events)
            policy = analyze_feedback_patterns(
                inbox.id,
                events,
                contracts=contracts,
                previous=inbox.learning_policy,
                refined_since=inbox.prompt_refined_at,
            )
        except Exception:
            _LOGGER.exception("Policy recompute failed for inbox %s; keeping the cached policy.", inbox.id)
            return inbox.learning_policy or LearningPolicy.bootstrap(inbox.id)

        self.db.save_learning_policy(inbox.id, policy)
        return policy

    def set_live_threshold(self, inbox_id: str, value: Any) -> LearningPolicy:
        inbox = self._require_inbox(inbox_id)
        if inbox.is_all_contracts:
            raise ValueError("The all-contracts inbox has no relevance threshold.")
        try:
            requested = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError("threshold must be a number.") from exc
        if not math.isfinite(requested):
            raise ValueError("threshold must be a number.")

        policy = inbox.learning_policy or self.recompute_policy(inbox.id)
        policy.dynamic_min_score = clamp_dynamic_score(requested)
        self.db.save_learning_policy(inbox.id, policy)
        _LOGGER.info("Live threshold for inbox %s set to %d by user.", inbox.id, policy.dynamic_min_score)
        return policy

    def learning_status(self, inbox_id: str) -> dict[str, Any]:
        inbox = self._require_inbox(inbox_id)
        policy = None if inbox.is_all_contracts else inbox.learning_policy
        return {
            "inbox_id": inbox.id,
            "stage": learning_stage(policy).value,
            "message": learning_status(policy),
            "total_feedback": policy.total_feedback if policy else 0,
            "confidence_level": policy.confidence_level if policy else 0,
            "dynamic_min_score": policy.dynamic_min_score if policy else LearningPolicy.bootstrap(inbox.id).dynamic_min_score,
            "threshold_stage_enabled": threshold_stage_enabled(policy),
            "boost_stage_enabled": boost_stage_enabled(policy),
            "offer_prompt_refinement": should_offer_prompt_refinement(policy),
        }

    def feedback_stats(self, inbox_id: str) -> dict[str, Any]:
        inbox = self._require_inbox(inbox_id)
        details = feedback_stats(self.db.list_feedback(inbox.id))
        details["inbox_id"] = inbox.id
        return details

    # ---- contract state actions -------------------------------------------

    def save_contract(
        self,
        contract_id: str,
        *,
        inbox_id: str | None = None,
        match_score: Any = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_user = (user_id or "").strip() or self.default_user_id

        event = None
        if inbox_id is not None:
            event = self.record_feedback(inbox_id, contract.id, FeedbackAction.SAVED, match_score)

        saved = self.db.set_saved(contract.id, saved_by=safe_user)
        policy = self.recompute_policy(event.inbox_id) if event else None
        return {
            "saved": saved.to_dict(),
            "feedback": event.to_dict() if event else None,
            "learning_policy": policy.to_dict() if policy else None,
        }

    def unsave_contract(self, contract_id: str) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        removed = self.db.clear_saved(contract.id)
        return {"contract_id": contract.id, "saved": False, "changed": removed}

    def hide_contract(
        self,
        contract_id: str,
        *,
        inbox_id: str | None,
        match_score: Any,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_user = (user_id or "").strip() or self.default_user_id

        event = self.record_feedback(inbox_id, contract.id, FeedbackAction.HIDDEN, match_score, hide_reason=reason)

        state = self.db.hide_in_inbox(
            contract.id,
            event.inbox_id,
            HiddenMark(hidden_at=event.created_at, hidden_by=safe_user, hidden_reason=event.hide_reason),
        )

        policy = self.recompute_policy(event.inbox_id)
        return {
            "hidden": state.to_dict(),
            "feedback": event.to_dict(),
            "learning_policy": policy.to_dict(),
        }

    def unhide_contract(self, contract_id: str, *, inbox_id: str | None) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_inbox_id = str(inbox_id or "").strip()
        if not safe_inbox_id:
            raise MissingCollectionContext("Unhiding requires an inbox id.")
        self._require_inbox(safe_inbox_id)

        state = self.db.restore_in_inbox(contract.id, safe_inbox_id)
        return {"hidden": state.to_dict()}

    def mark_read(
        self,
        contract_id: str,
        *,
        user_id: str | None = None,
        inbox_id: str | None = None,
        match_score: Any = None,
        view_duration: float | None = None,
    ) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_user = (user_id or "").strip() or self.default_user_id

        event = None
        if inbox_id is not None and match_score is not None:
            # Views feed the ledger but do not trigger a recompute.
            event = self.record_feedback(
                inbox_id,
                contract.id,
                FeedbackAction.VIEWED,
                match_score,
                view_duration=view_duration,
            )

        state = PersonalState(contract_id=contract.id, user_id=safe_user, is_unread=False, is_new=False)
        self.db.save_personal_state(state)
        return {"personal": state.to_dict(), "feedback": event.to_dict() if event else None}

    def mark_unread(self, contract_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_user = (user_id or "").strip() or self.default_user_id
        current = self.db.get_personal_state(contract.id, safe_user)
        state = PersonalState(contract_id=contract.id, user_id=safe_user, is_unread=True, is_new=current.is_new)
        self.db.save_personal_state(state)
        return {"personal": state.to_dict()}

    def contract_state(self, contract_id: str, *, user_id: str | None = None) -> dict[str, Any]:
        contract = self._require_contract(contract_id)
        safe_user = (user_id or "").strip() or self.default_user_id
        saved = self.db.get_saved_state(contract.id)
        return {
            "contract": contract.to_dict(),
            "saved": saved.to_dict() if saved else None,
            "hidden": self.db.get_hidden_state(contract.id).to_dict(),
            "personal": self.db.get_personal_state(contract.id, safe_user).to_dict(),
        }

    # ---- ranking -----------------------------------------------------------

    def rank_for_inbox(
        self,
        inbox_id: str,
        *,
        query_text: str | None = None,
        filters: InboxFilters | Mapping[str, Any] | None = None,
        user_id: str | None = None,
        include_hidden: bool = False,
    ) -> list[SearchResult]:
        inbox = self._require_inbox(inbox_id)
        safe_user = (user_id or "").strip() or self.default_user_id
        active_filters = inbox.filters if filters is None else self._coerce_filters(filters)

        candidates = [contract for contract in self.db.list_contracts() if active_filters.matches(contract)]
        if not include_hidden:
            hidden_ids = self.db.hidden_contract_ids(inbox.id)
            candidates = [contract for contract in candidates if contract.id not in hidden_ids]

        pipeline = self._pipeline()
        if inbox.is_all_contracts:
            results = pipeline.rank_all(candidates)
        else:
            query = (query_text or "").strip() or inbox.prompt
            if query == inbox.prompt and inbox.embedding:
                query_vector = inbox.embedding
            else:
                query_vector = pipeline.embed_query(query)
                if query == inbox.prompt:
                    self.db.save_inbox_embedding(inbox.id, query_vector)
            results = pipeline.rank(query_vector, candidates, inbox.learning_policy)

        read_ids = self.db.read_contract_ids(safe_user)
        unread = sum(1 for result in results if result.contract.id not in read_ids)
        self.db.update_unread_count(inbox.id, unread)

        _LOGGER.info(
            "Ranked inbox %s: %d candidates, %d results, %d unread for %s.",
            inbox.id,
            len(candidates),
            len(results),
            unread,
            safe_user,
        )
        return results

    # ---- catalog and remote model helpers ---------------------------------

    def upsert_contracts(self, records: Iterable[Contract | Mapping[str, Any]]) -> int:
        contracts: list[Contract] = []
        for record in records:
            contract = record if isinstance(record, Contract) else Contract.from_dict(dict(record))
            if not contract.id.strip() or not contract.title.strip():
                raise ValueError("Each contract needs an id and a title.")
            contracts.append(contract)
        count = self.db.upsert_contracts(contracts)
        _LOGGER.info("Upserted %d contracts.", count)
        return count

    def get_contract(self, contract_id: str) -> Contract:
        return self._require_contract(contract_id)

    def precompute_embeddings(self, *, limit: int | None = None) -> dict[str, Any]:
        embedder = self._resolve_embedder()
        if embedder is None:
            raise RuntimeError("No embedding provider is configured.")

        pending = [contract for contract in self.db.list_contracts_missing_embeddings() if contract.embedding_text()]
        if limit is not None:
            pending = pending[: max(0, int(limit))]

        embedded = 0
        failed = 0
        batch_size = max(1, self.embed_batch_size)
        embed_batch = getattr(embedder, "embed_batch", None)
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            texts = [contract.embedding_text() for contract in batch]
            try:
                if embed_batch is not None:
                    vectors = embed_batch(texts)
                else:
                    vectors = [embedder.embed(text) for text in texts]
            except RuntimeError:
                _LOGGER.warning("Embedding batch starting at %d failed.", start, exc_info=True)
                failed += len(batch)
                continue

            for contract, text, vector in zip(batch, texts, vectors):
                self.db.save_contract_embedding(contract.id, text, vector)
                embedded += 1
            _LOGGER.info("Embedded %d/%d contracts.", embedded, len(pending))

        return {
            "embedded": embedded,
            "failed": failed,
            "remaining": len(self.db.list_contracts_missing_embeddings()),
        }

    def refine_prompt(self, inbox_id: str, *, apply: bool = True) -> dict[str, Any]:
        inbox = self._require_inbox(inbox_id)
        if inbox.is_all_contracts:
            raise ValueError("The all-contracts inbox has no prompt to refine.")
        policy = inbox.learning_policy
        refinements = list(policy.prompt_refinements) if policy else []
        if not refinements:
            raise ValueError("No high-score hide reasons are available for refinement.")

        hide_reasons = [item.hide_reason for item in refinements]
        refined = refine_prompt_with_feedback(
            self._ensure_client(),
            original_prompt=inbox.prompt,
            hide_reasons=hide_reasons,
            model=self.cfg.chat_model,
        )

        applied = bool(apply and refined and refined != inbox.prompt)
        if applied:
            self.db.update_inbox_config(
                inbox.id,
                name=inbox.name,
                prompt=refined,
                filters=inbox.filters,
                embedding=None,
                prompt_refined_at=max(item.created_at for item in refinements),
            )
            self.recompute_policy(inbox.id)
            _LOGGER.info("Refined prompt for inbox %s from %d hide reasons.", inbox.id, len(hide_reasons))

        return {
            "inbox_id": inbox.id,
            "original_prompt": inbox.prompt,
            "refined_prompt": refined,
            "hide_reasons": hide_reasons,
            "applied": applied,
        }

    def explain_match(self, inbox_id: str, contract_id: str, *, query_text: str | None = None) -> dict[str, Any]:
        inbox = self._require_inbox(inbox_id)
        contract = self._require_contract(contract_id)
        query = (query_text or "").strip() or inbox.prompt
        if not query:
            raise ValueError("A query is required to explain a match.")

        client = self._ensure_client()
        explanation = self._run_with_timeout(
            "Match explanation",
            lambda: explain_match(client, query=query, contract=contract, model=self.cfg.chat_model),
            self.request_timeout_seconds,
        )
        return {"inbox_id": inbox.id, "contract_id": contract.id, "explanation": explanation}

    def stats(self) -> dict[str, Any]:
        details = self.db.stats()
        details["ai_enabled"] = self.ai_enabled
        details["embed_model"] = self.cfg.embed_model
        details["chat_model"] = self.cfg.chat_model
        details["search_limit"] = self.search_limit
        return details
