"""Feedback pattern analysis and the dynamic threshold control loop.

The analyzer turns the complete feedback ledger of one inbox into a
``LearningPolicy``. Everything except the live cutoff is re-derived from the
ledger on every call. The live cutoff (``dynamic_min_score``) is an operating
point: it moves one controller step at a time, and only when the ledger holds
saves or hides the previous policy has not seen yet.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import Any, Callable, Mapping, Sequence

from contract_inbox.models import (
    BOOTSTRAP_MIN_SCORE,
    MAX_DYNAMIC_SCORE,
    MIN_DYNAMIC_SCORE,
    Contract,
    FeedbackAction,
    FeedbackEvent,
    LearningPolicy,
    LearningStage,
    PromptRefinement,
    ThresholdAdjustments,
    clamp_dynamic_score,
    round_half_up,
)


_LOGGER = logging.getLogger(__name__)

FULL_CONFIDENCE_FEEDBACK = 20

SAVE_FLOOR_MARGIN = 10
HIDE_CEILING_MARGIN = 5

CONTROLLER_MIN_FEEDBACK = 10
CONTROLLER_WINDOW = 20
THRESHOLD_STEP = 10
EXPAND_MIN_NEAR_SAVES = 3
EXPAND_MIN_SAVES = 5
NARROW_HIDE_RATE = 0.6
NARROW_MIN_ACTIONS = 10

THRESHOLD_GATE_FEEDBACK = 5
THRESHOLD_GATE_CONFIDENCE = 30
BOOST_GATE_FEEDBACK = 10
BOOST_GATE_CONFIDENCE = 50

BOOST_MIN_SUPPORT = 3
BOOST_SCALE = 20
MAX_BOOST = 10

REFINEMENT_MIN_SCORE = 70
REFINEMENT_MIN_REASON_LENGTH = 5
REFINEMENT_MIN_CANDIDATES = 3

_JUDGED_ACTIONS = {FeedbackAction.SAVED, FeedbackAction.HIDDEN}


@dataclass(frozen=True)
class ThresholdDecision:
    threshold: int
    reason: str | None = None


def calculate_dynamic_threshold(
    events: Sequence[FeedbackEvent],
    current_threshold: int = BOOTSTRAP_MIN_SCORE,
) -> ThresholdDecision:
    """Propose the next live cutoff from the most recent feedback.

    Expanding lowers the cutoff when the user keeps saving borderline matches.
    Narrowing raises it when most recent save/hide actions are hides. Narrow is
    evaluated last and overwrites an expand proposal from the same call.
    """
    current = clamp_dynamic_score(current_threshold)
    if len(events) < CONTROLLER_MIN_FEEDBACK:
        return ThresholdDecision(threshold=current)

    recent = list(events)[-CONTROLLER_WINDOW:]
    recent_saves = [event for event in recent if event.action is FeedbackAction.SAVED]
    recent_hides = [event for event in recent if event.action is FeedbackAction.HIDDEN]

    new_threshold = current
    reason: str | None = None

    near_threshold_saves = [
        event for event in recent_saves if 0 < event.match_score < current + THRESHOLD_STEP
    ]
    if len(near_threshold_saves) >= EXPAND_MIN_NEAR_SAVES and len(recent_saves) >= EXPAND_MIN_SAVES:
        new_threshold = max(MIN_DYNAMIC_SCORE, current - THRESHOLD_STEP)
        reason = f"Expanded: you saved {len(near_threshold_saves)} contracts near the threshold"

    total_actions = len(recent_saves) + len(recent_hides)
    if total_actions >= NARROW_MIN_ACTIONS:
        hide_rate = len(recent_hides) / total_actions
        if hide_rate > NARROW_HIDE_RATE:
            new_threshold = min(MAX_DYNAMIC_SCORE, current + THRESHOLD_STEP)
            reason = f"Narrowed: you hid {round_half_up(hide_rate * 100)}% of results"

    return ThresholdDecision(threshold=clamp_dynamic_score(new_threshold), reason=reason)


def _advance_dynamic_threshold(
    events: Sequence[FeedbackEvent],
    previous: LearningPolicy | None,
) -> tuple[int, ThresholdAdjustments]:
    if previous is None:
        current = BOOTSTRAP_MIN_SCORE
        adjustments = ThresholdAdjustments()
        seen = 0
    else:
        current = previous.dynamic_min_score
        adjustments = ThresholdAdjustments.from_dict(previous.threshold_adjustments.to_dict())
        seen = previous.total_feedback

    unseen = list(events[seen:]) if seen <= len(events) else list(events)
    if not any(event.action in _JUDGED_ACTIONS for event in unseen):
        return current, adjustments

    decision = calculate_dynamic_threshold(events, current)
    if decision.threshold == current:
        return current, adjustments

    if decision.threshold < current:
        adjustments.expanded_count += 1
    else:
        adjustments.narrowed_count += 1
    adjustments.last_adjustment = events[-1].created_at
    adjustments.last_reason = decision.reason
    _LOGGER.info(
        "Dynamic threshold moved %d -> %d for inbox %s (%s).",
        current,
        decision.threshold,
        events[-1].inbox_id,
        decision.reason,
    )
    return decision.threshold, adjustments


def _category_boosts(
    judged: Sequence[tuple[FeedbackEvent, Contract]],
    key: Callable[[Contract], str],
    baseline_rate: float,
) -> dict[str, int]:
    tallies: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for event, contract in judged:
        value = key(contract)
        if not value.strip():
            continue
        if event.action is FeedbackAction.SAVED:
            tallies[value][0] += 1
        else:
            tallies[value][1] += 1

    boosts: dict[str, int] = {}
    for value, (saves, hides) in sorted(tallies.items()):
        support = saves + hides
        if support < BOOST_MIN_SUPPORT:
            continue
        rate = saves / support
        boost = round_half_up((rate - baseline_rate) * BOOST_SCALE)
        boost = max(-MAX_BOOST, min(MAX_BOOST, boost))
        if boost:
            boosts[value] = boost
    return boosts


def derive_category_boosts(
    events: Sequence[FeedbackEvent],
    contracts: Mapping[str, Contract] | None,
) -> tuple[dict[str, int], dict[str, int]]:
    """Return (authority_boosts, classification_boosts).

    Each category value seen on at least ``BOOST_MIN_SUPPORT`` saved or hidden
    contracts gets an additive adjustment proportional to how far its save rate
    sits from the inbox-wide save rate, bounded to +/- ``MAX_BOOST`` points.
    """
    if not contracts:
        return {}, {}

    judged: list[tuple[FeedbackEvent, Contract]] = []
    for event in events:
        if event.action not in _JUDGED_ACTIONS:
            continue
        contract = contracts.get(event.contract_id)
        if contract is not None:
            judged.append((event, contract))
    if not judged:
        return {}, {}

    saves = sum(1 for event, _contract in judged if event.action is FeedbackAction.SAVED)
    baseline_rate = saves / len(judged)
    return (
        _category_boosts(judged, lambda contract: contract.authority, baseline_rate),
        _category_boosts(judged, lambda contract: contract.buyer_classification, baseline_rate),
    )


def prompt_refinement_candidates(
    events: Sequence[FeedbackEvent],
    *,
    refined_since: str | None = None,
) -> list[PromptRefinement]:
    candidates: list[PromptRefinement] = []
    for event in events:
        if event.action is not FeedbackAction.HIDDEN:
            continue
        reason = (event.hide_reason or "").strip()
        if event.match_score <= REFINEMENT_MIN_SCORE or len(reason) <= REFINEMENT_MIN_REASON_LENGTH:
            continue
        if refined_since and event.created_at <= refined_since:
            continue
        candidates.append(
            PromptRefinement(hide_reason=reason, match_score=event.match_score, created_at=event.created_at)
        )
    return candidates


def analyze_feedback_patterns(
    inbox_id: str,
    events: Sequence[FeedbackEvent],
    *,
    contracts: Mapping[str, Contract] | None = None,
    previous: LearningPolicy | None = None,
    refined_since: str | None = None,
) -> LearningPolicy:
    """Derive the learning policy for one inbox from its full feedback ledger.

    Args:
        inbox_id: Inbox the ledger belongs to.
        events: Every feedback event for the inbox, oldest first.
        contracts: Contract lookup used to learn per-category boosts.
        previous: The cached policy; supplies the live cutoff to step from.
        refined_since: Timestamp of the last prompt refinement, if any.

    Returns:
        A policy that depends only on the arguments (no wall-clock reads).
    """
    if not events:
        policy = LearningPolicy.bootstrap(inbox_id)
        if previous is not None:
            policy.dynamic_min_score = previous.dynamic_min_score
            policy.threshold_adjustments = ThresholdAdjustments.from_dict(previous.threshold_adjustments.to_dict())
        return policy

    saved = [event for event in events if event.action is FeedbackAction.SAVED]
    hidden = [event for event in events if event.action is FeedbackAction.HIDDEN]
    viewed = [event for event in events if event.action is FeedbackAction.VIEWED]

    min_relevance_score = 0
    if saved:
        min_relevance_score = max(0, round_half_up(min(event.match_score for event in saved) - SAVE_FLOOR_MARGIN))

    max_irrelevance_score = 100
    if hidden:
        max_irrelevance_score = min(100, round_half_up(max(event.match_score for event in hidden) + HIDE_CEILING_MARGIN))

    total = len(events)
    confidence_level = min(100, round_half_up(total / FULL_CONFIDENCE_FEEDBACK * 100))

    dynamic_min_score, adjustments = _advance_dynamic_threshold(events, previous)
    authority_boosts, classification_boosts = derive_category_boosts(events, contracts)
    refinements = prompt_refinement_candidates(events, refined_since=refined_since)

    policy = LearningPolicy(
        inbox_id=inbox_id,
        min_relevance_score=min_relevance_score,
        max_irrelevance_score=max_irrelevance_score,
        dynamic_min_score=dynamic_min_score,
        threshold_adjustments=adjustments,
        authority_boosts=authority_boosts,
        classification_boosts=classification_boosts,
        confidence_level=confidence_level,
        total_feedback=total,
        saved_count=len(saved),
        hidden_count=len(hidden),
        viewed_count=len(viewed),
        prompt_refinements=refinements,
        pending_prompt_update=len(refinements) >= REFINEMENT_MIN_CANDIDATES,
        last_updated=events[-1].created_at,
    )
    _LOGGER.info(
        "Analyzed %d feedback events for inbox %s: band=[%d, %d] cutoff=%d confidence=%d.",
        total,
        inbox_id,
        policy.min_relevance_score,
        policy.max_irrelevance_score,
        policy.dynamic_min_score,
        policy.confidence_level,
    )
    return policy


def threshold_stage_enabled(policy: LearningPolicy | None) -> bool:
    if policy is None:
        return False
    return (
        policy.total_feedback >= THRESHOLD_GATE_FEEDBACK
        and policy.confidence_level >= THRESHOLD_GATE_CONFIDENCE
    )


def boost_stage_enabled(policy: LearningPolicy | None) -> bool:
    if policy is None:
        return False
    return policy.total_feedback >= BOOST_GATE_FEEDBACK and policy.confidence_level >= BOOST_GATE_CONFIDENCE


def learning_stage(policy: LearningPolicy | None) -> LearningStage:
    total = policy.total_feedback if policy else 0
    if total == 0:
        return LearningStage.NO_FEEDBACK
    if total < THRESHOLD_GATE_FEEDBACK:
        return LearningStage.LEARNING
    if total < FULL_CONFIDENCE_FEEDBACK:
        return LearningStage.ACTIVE_LOW_CONFIDENCE
    return LearningStage.ACTIVE_HIGH_CONFIDENCE


def learning_status(policy: LearningPolicy | None) -> str:
    if policy is None or policy.total_feedback == 0:
        return "No learning data yet. Save or hide contracts to improve matching."
    if policy.total_feedback < THRESHOLD_GATE_FEEDBACK:
        return f"Learning... ({policy.total_feedback}/{THRESHOLD_GATE_FEEDBACK} feedback events needed)"
    if policy.confidence_level < THRESHOLD_GATE_CONFIDENCE:
        return f"Learning in progress ({policy.confidence_level}% confidence)"

    threshold_info = ""
    if policy.dynamic_min_score != BOOTSTRAP_MIN_SCORE:
        threshold_info = f" - threshold: {policy.dynamic_min_score}%"
    return (
        f"Active learning ({policy.total_feedback} events, "
        f"{policy.confidence_level}% confidence{threshold_info})"
    )


def should_offer_prompt_refinement(policy: LearningPolicy | None) -> bool:
    return bool(policy and policy.pending_prompt_update)


def feedback_stats(events: Sequence[FeedbackEvent]) -> dict[str, Any]:
    saved = [event.match_score for event in events if event.action is FeedbackAction.SAVED]
    hidden = [event.match_score for event in events if event.action is FeedbackAction.HIDDEN]
    viewed = sum(1 for event in events if event.action is FeedbackAction.VIEWED)
    return {
        "total": len(events),
        "saved": len(saved),
        "hidden": len(hidden),
        "viewed": viewed,
        "avg_saved_score": round_half_up(sum(saved) / len(saved)) if saved else 0,
        "avg_hidden_score": round_half_up(sum(hidden) / len(hidden)) if hidden else 0,
    }
