#!/usr/bin/env python3
"""Replays a recorded feedback stream through the analyzer and reports how the policy evolves."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import statistics
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from dotenv import load_dotenv
from contract_inbox.learning import analyze_feedback_patterns, learning_stage
from contract_inbox.models import Contract, FeedbackAction, FeedbackEvent, LearningPolicy


def load_events(path: Path, inbox_id: str) -> list[FeedbackEvent]:
    rows = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(rows, list):
        raise ValueError("Feedback file must contain a JSON list of events.")

    events: list[FeedbackEvent] = []
    for position, row in enumerate(rows):
        events.append(
            FeedbackEvent(
                id=str(row.get("id") or f"event-{position}"),
                inbox_id=inbox_id,
                contract_id=str(row["contract_id"]),
                action=FeedbackAction.parse(row["action"]),
                match_score=float(row["match_score"]),
                created_at=str(row.get("created_at") or f"{position:08d}"),
                hide_reason=row.get("hide_reason"),
                view_duration=row.get("view_duration"),
            )
        )
    return events


def load_contracts(path: Path | None) -> dict[str, Contract]:
    if path is None:
        return {}
    rows = json.loads(path.read_text(encoding="utf-8"))
    return {str(row["id"]): Contract.from_dict(row) for row in rows}


def simulate(events: list[FeedbackEvent], contracts: dict[str, Contract], inbox_id: str) -> dict:
    steps = []
    cutoffs = []
    policy: LearningPolicy | None = None
    for count in range(1, len(events) + 1):
        # Recompute after every event, the way the service does after each save or hide.
        policy = analyze_feedback_patterns(inbox_id, events[:count], contracts=contracts, previous=policy)
        cutoffs.append(policy.dynamic_min_score)
        steps.append(
            {
                "event": count,
                "action": events[count - 1].action.value,
                "match_score": events[count - 1].match_score,
                "stage": learning_stage(policy).value,
                "band": [policy.min_relevance_score, policy.max_irrelevance_score],
                "dynamic_min_score": policy.dynamic_min_score,
                "confidence_level": policy.confidence_level,
                "last_reason": policy.threshold_adjustments.last_reason,
            }
        )

    final = policy or LearningPolicy.bootstrap(inbox_id)
    summary = {
        "events": len(events),
        "final_stage": learning_stage(final).value,
        "final_dynamic_min_score": final.dynamic_min_score,
        "mean_dynamic_min_score": round(statistics.mean(cutoffs), 2) if cutoffs else final.dynamic_min_score,
        "expanded": final.threshold_adjustments.expanded_count,
        "narrowed": final.threshold_adjustments.narrowed_count,
        "authority_boosts": final.authority_boosts,
        "classification_boosts": final.classification_boosts,
        "pending_prompt_update": final.pending_prompt_update,
    }
    return {"summary": summary, "steps": steps, "policy": final.to_dict()}


def main() -> int:
    load_dotenv(ROOT_DIR / ".env")
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Replay a feedback stream through the learning analyzer.")
    parser.add_argument("feedback", type=Path, help="JSON list of feedback events, oldest first.")
    parser.add_argument("--contracts", type=Path, default=None, help="Optional JSON list of contracts for boosts.")
    parser.add_argument("--inbox-id", default="simulated-inbox", help="Inbox id stamped on replayed events.")
    parser.add_argument(
        "--output",
        type=Path,
        default=ROOT_DIR / "docs" / "learning_last_run.json",
        help="Where to write JSON simulation results.",
    )
    args = parser.parse_args()

    events = load_events(args.feedback, args.inbox_id)
    payload = simulate(events, load_contracts(args.contracts), args.inbox_id)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    summary = payload["summary"]
    print("Learning Simulation")
    print(f"events: {summary['events']}")
    print(f"final stage: {summary['final_stage']}")
    print(
        f"dynamic cutoff (final / mean): {summary['final_dynamic_min_score']} / "
        f"{summary['mean_dynamic_min_score']}"
    )
    print(f"adjustments (expanded / narrowed): {summary['expanded']} / {summary['narrowed']}")
    print(f"prompt refinement pending: {summary['pending_prompt_update']}")
    print(f"saved: {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
