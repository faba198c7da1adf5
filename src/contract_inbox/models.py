"""Dataclasses shared by the storage, learning, and ranking layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import math
from typing import Any


BOOTSTRAP_MIN_SCORE = 30
MIN_DYNAMIC_SCORE = 30
MAX_DYNAMIC_SCORE = 70


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_int(value: Any, default: int) -> int:
    try:
        return round_half_up(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def clamp_dynamic_score(value: float) -> int:
    return int(max(MIN_DYNAMIC_SCORE, min(MAX_DYNAMIC_SCORE, round_half_up(value))))


class FeedbackAction(str, Enum):
    SAVED = "saved"
    HIDDEN = "hidden"
    VIEWED = "viewed"
    IGNORED = "ignored"

    @classmethod
    def parse(cls, value: Any) -> "FeedbackAction":
        if isinstance(value, cls):
            return value
        cleaned = str(value or "").strip().lower()
        for action in cls:
            if action.value == cleaned:
                return action
        allowed = ", ".join(action.value for action in cls)
        raise ValueError(f"action must be one of: {allowed}")


class LearningStage(str, Enum):
    NO_FEEDBACK = "no_feedback"
    LEARNING = "learning"
    ACTIVE_LOW_CONFIDENCE = "active_low_confidence"
    ACTIVE_HIGH_CONFIDENCE = "active_high_confidence"


@dataclass(frozen=True)
class Contract:
    id: str
    title: str
    description: str = ""
    authority: str = ""
    value: float | None = None
    close_date: str | None = None
    publish_date: str | None = None
    url: str | None = None
    buyer_classification: str = ""
    embedding: list[float] | None = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def embedding_text(self) -> str:
        return f"{self.title}\n\n{self.description}".strip()

    def snippet(self, length: int = 120) -> str:
        text = " ".join(self.description.split())
        if len(text) <= length:
            return text
        return text[:length].rstrip() + "..."

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "authority": self.authority,
            "value": self.value,
            "close_date": self.close_date,
            "publish_date": self.publish_date,
            "url": self.url,
            "buyer_classification": self.buyer_classification,
            "has_embedding": self.has_embedding,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Contract":
        embedding = payload.get("embedding")
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            description=str(payload.get("description") or ""),
            authority=str(payload.get("authority") or ""),
            value=_as_float(payload.get("value")),
            close_date=payload.get("close_date"),
            publish_date=payload.get("publish_date"),
            url=payload.get("url"),
            buyer_classification=str(payload.get("buyer_classification") or ""),
            embedding=[float(v) for v in embedding] if isinstance(embedding, list) and embedding else None,
        )


@dataclass(frozen=True)
class InboxFilters:
    value_min: float | None = None
    value_max: float | None = None
    buyer_classifications: tuple[str, ...] = ()
    authorities: tuple[str, ...] = ()

    def matches(self, contract: Contract) -> bool:
        # Unknown values pass the value range.
        if contract.value is not None:
            if self.value_min is not None and contract.value < self.value_min:
                return False
            if self.value_max is not None and contract.value > self.value_max:
                return False
        if self.buyer_classifications:
            allowed = {value.casefold() for value in self.buyer_classifications}
            if contract.buyer_classification.casefold() not in allowed:
                return False
        if self.authorities:
            allowed = {value.casefold() for value in self.authorities}
            if contract.authority.casefold() not in allowed:
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "value_min": self.value_min,
            "value_max": self.value_max,
            "buyer_classifications": list(self.buyer_classifications),
            "authorities": list(self.authorities),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "InboxFilters":
        if not isinstance(payload, dict):
            return cls()
        value_min = _as_float(payload.get("value_min"))
        value_max = _as_float(payload.get("value_max"))
        if value_min is not None and value_max is not None and value_min > value_max:
            raise ValueError("value_min must not exceed value_max")
        return cls(
            value_min=value_min,
            value_max=value_max,
            buyer_classifications=tuple(_as_str_list(payload.get("buyer_classifications"))),
            authorities=tuple(_as_str_list(payload.get("authorities"))),
        )


@dataclass(frozen=True)
class FeedbackEvent:
    id: str
    inbox_id: str
    contract_id: str
    action: FeedbackAction
    match_score: float
    created_at: str
    hide_reason: str | None = None
    view_duration: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "inbox_id": self.inbox_id,
            "contract_id": self.contract_id,
            "action": self.action.value,
            "match_score": self.match_score,
            "created_at": self.created_at,
            "hide_reason": self.hide_reason,
            "view_duration": self.view_duration,
        }


@dataclass
class ThresholdAdjustments:
    expanded_count: int = 0
    narrowed_count: int = 0
    last_adjustment: str | None = None
    last_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "expanded_count": self.expanded_count,
            "narrowed_count": self.narrowed_count,
            "last_adjustment": self.last_adjustment,
            "last_reason": self.last_reason,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "ThresholdAdjustments":
        if not isinstance(payload, dict):
            return cls()
        return cls(
            expanded_count=max(0, _as_int(payload.get("expanded_count"), 0)),
            narrowed_count=max(0, _as_int(payload.get("narrowed_count"), 0)),
            last_adjustment=payload.get("last_adjustment"),
            last_reason=payload.get("last_reason"),
        )


@dataclass(frozen=True)
class PromptRefinement:
    hide_reason: str
    match_score: float
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "hide_reason": self.hide_reason,
            "match_score": self.match_score,
            "created_at": self.created_at,
        }


@dataclass
class LearningPolicy:
    """Cached, recomputable scoring policy for one inbox."""

    inbox_id: str
    min_relevance_score: int = 0
    max_irrelevance_score: int = 100
    dynamic_min_score: int = BOOTSTRAP_MIN_SCORE
    threshold_adjustments: ThresholdAdjustments = field(default_factory=ThresholdAdjustments)
    authority_boosts: dict[str, int] = field(default_factory=dict)
    classification_boosts: dict[str, int] = field(default_factory=dict)
    confidence_level: int = 0
    total_feedback: int = 0
    saved_count: int = 0
    hidden_count: int = 0
    viewed_count: int = 0
    prompt_refinements: list[PromptRefinement] = field(default_factory=list)
    pending_prompt_update: bool = False
    last_updated: str | None = None

    @classmethod
    def bootstrap(cls, inbox_id: str) -> "LearningPolicy":
        return cls(inbox_id=inbox_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inbox_id": self.inbox_id,
            "min_relevance_score": self.min_relevance_score,
            "max_irrelevance_score": self.max_irrelevance_score,
            "dynamic_min_score": self.dynamic_min_score,
            "threshold_adjustments": self.threshold_adjustments.to_dict(),
            "authority_boosts": dict(sorted(self.authority_boosts.items())),
            "classification_boosts": dict(sorted(self.classification_boosts.items())),
            "confidence_level": self.confidence_level,
            "total_feedback": self.total_feedback,
            "saved_count": self.saved_count,
            "hidden_count": self.hidden_count,
            "viewed_count": self.viewed_count,
            "prompt_refinements": [item.to_dict() for item in self.prompt_refinements],
            "pending_prompt_update": self.pending_prompt_update,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, inbox_id: str | None = None) -> "LearningPolicy":
        # Older records may lack any of these fields; missing ones take bootstrap defaults.
        resolved_id = str(payload.get("inbox_id") or inbox_id or "")
        refinements: list[PromptRefinement] = []
        for row in payload.get("prompt_refinements") or []:
            if not isinstance(row, dict) or not str(row.get("hide_reason") or "").strip():
                continue
            refinements.append(
                PromptRefinement(
                    hide_reason=str(row["hide_reason"]),
                    match_score=_as_float(row.get("match_score")) or 0.0,
                    created_at=str(row.get("created_at") or ""),
                )
            )

        def boosts(key: str) -> dict[str, int]:
            raw = payload.get(key)
            if not isinstance(raw, dict):
                return {}
            return {str(name): _as_int(value, 0) for name, value in raw.items() if _as_int(value, 0) != 0}

        return cls(
            inbox_id=resolved_id,
            min_relevance_score=max(0, min(100, _as_int(payload.get("min_relevance_score"), 0))),
            max_irrelevance_score=max(0, min(100, _as_int(payload.get("max_irrelevance_score"), 100))),
            dynamic_min_score=clamp_dynamic_score(_as_int(payload.get("dynamic_min_score"), BOOTSTRAP_MIN_SCORE)),
            threshold_adjustments=ThresholdAdjustments.from_dict(payload.get("threshold_adjustments")),
            authority_boosts=boosts("authority_boosts"),
            classification_boosts=boosts("classification_boosts"),
            confidence_level=max(0, min(100, _as_int(payload.get("confidence_level"), 0))),
            total_feedback=max(0, _as_int(payload.get("total_feedback"), 0)),
            saved_count=max(0, _as_int(payload.get("saved_count"), 0)),
            hidden_count=max(0, _as_int(payload.get("hidden_count"), 0)),
            viewed_count=max(0, _as_int(payload.get("viewed_count"), 0)),
            prompt_refinements=refinements,
            pending_prompt_update=bool(payload.get("pending_prompt_update", False)),
            last_updated=payload.get("last_updated"),
        )


@dataclass
class Inbox:
    id: str
    name: str
    prompt: str
    created_at: str
    updated_at: str
    embedding: list[float] | None = None
    is_all_contracts: bool = False
    filters: InboxFilters = field(default_factory=InboxFilters)
    learning_policy: LearningPolicy | None = None
    unread_count: int = 0
    prompt_refined_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "is_all_contracts": self.is_all_contracts,
            "has_embedding": bool(self.embedding),
            "filters": self.filters.to_dict(),
            "learning_policy": self.learning_policy.to_dict() if self.learning_policy else None,
            "unread_count": self.unread_count,
            "prompt_refined_at": self.prompt_refined_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class SearchResult:
    contract: Contract
    match_score: int
    explanation: str | None = None
    explanation_deferred: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = self.contract.to_dict()
        payload["snippet"] = self.contract.snippet()
        payload["match_score"] = self.match_score
        payload["explanation"] = self.explanation
        payload["explanation_deferred"] = self.explanation_deferred
        return payload


@dataclass(frozen=True)
class HiddenMark:
    hidden_at: str
    hidden_by: str | None = None
    hidden_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "hidden_at": self.hidden_at,
            "hidden_by": self.hidden_by,
            "hidden_reason": self.hidden_reason,
        }


@dataclass
class SharedHiddenState:
    """Per-inbox hidden marks for one contract, shared by every inbox participant."""

    contract_id: str
    hidden_in_inboxes: list[str] = field(default_factory=list)
    hidden_metadata: dict[str, HiddenMark] = field(default_factory=dict)

    def is_hidden_in(self, inbox_id: str) -> bool:
        return inbox_id in self.hidden_in_inboxes

    def hide(self, inbox_id: str, mark: HiddenMark) -> None:
        if inbox_id not in self.hidden_in_inboxes:
            self.hidden_in_inboxes.append(inbox_id)
        self.hidden_metadata[inbox_id] = mark

    def restore(self, inbox_id: str) -> None:
        self.hidden_in_inboxes = [value for value in self.hidden_in_inboxes if value != inbox_id]
        self.hidden_metadata.pop(inbox_id, None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hidden_in_inboxes": list(self.hidden_in_inboxes),
            "hidden_metadata": {key: mark.to_dict() for key, mark in self.hidden_metadata.items()},
        }

    @classmethod
    def from_dict(cls, contract_id: str, payload: dict[str, Any]) -> "SharedHiddenState":
        metadata: dict[str, HiddenMark] = {}
        raw_metadata = payload.get("hidden_metadata")
        if isinstance(raw_metadata, dict):
            for inbox_id, row in raw_metadata.items():
                if not isinstance(row, dict):
                    continue
                metadata[str(inbox_id)] = HiddenMark(
                    hidden_at=str(row.get("hidden_at") or ""),
                    hidden_by=row.get("hidden_by"),
                    hidden_reason=row.get("hidden_reason"),
                )
        return cls(
            contract_id=contract_id,
            hidden_in_inboxes=_as_str_list(payload.get("hidden_in_inboxes")),
            hidden_metadata=metadata,
        )


@dataclass(frozen=True)
class SavedState:
    contract_id: str
    saved_at: str
    saved_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"contract_id": self.contract_id, "saved_at": self.saved_at, "saved_by": self.saved_by}


@dataclass(frozen=True)
class PersonalState:
    contract_id: str
    user_id: str
    is_unread: bool = True
    is_new: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "user_id": self.user_id,
            "is_unread": self.is_unread,
            "is_new": self.is_new,
        }
