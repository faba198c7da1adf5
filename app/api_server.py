"""FastAPI entrypoint exposing the contract inbox relevance engine."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from contract_inbox.errors import EmbeddingUnavailable
from contract_inbox.service import InboxService


load_dotenv(ROOT_DIR / ".env")


class FiltersModel(BaseModel):
    value_min: float | None = Field(default=None, ge=0)
    value_max: float | None = Field(default=None, ge=0)
    buyer_classifications: list[str] = Field(default_factory=list)
    authorities: list[str] = Field(default_factory=list)


class InboxCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    prompt: str = ""
    filters: FiltersModel | None = None
    is_all_contracts: bool = False


class InboxUpdateRequest(BaseModel):
    name: str | None = None
    prompt: str | None = None
    filters: FiltersModel | None = None


class ContractRecord(BaseModel):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    authority: str = ""
    value: float | None = None
    close_date: str | None = None
    publish_date: str | None = None
    url: str | None = None
    buyer_classification: str = ""
    embedding: list[float] | None = None


class ContractUpsertRequest(BaseModel):
    contracts: list[ContractRecord]


class FeedbackRequest(BaseModel):
    inbox_id: str | None = None
    contract_id: str = Field(min_length=1)
    action: str
    match_score: float
    hide_reason: str | None = None
    view_duration: float | None = None


class SearchRequest(BaseModel):
    query: str | None = None
    filters: FiltersModel | None = None
    user_id: str | None = None
    include_hidden: bool = False
    top_k: int | None = Field(default=None, ge=1, le=1000)


class ThresholdRequest(BaseModel):
    value: float


class SaveRequest(BaseModel):
    inbox_id: str | None = None
    match_score: float | None = None
    user_id: str | None = None


class HideRequest(BaseModel):
    inbox_id: str | None = None
    match_score: float
    reason: str | None = None
    user_id: str | None = None


class UnhideRequest(BaseModel):
    inbox_id: str | None = None


class ReadRequest(BaseModel):
    user_id: str | None = None
    inbox_id: str | None = None
    match_score: float | None = None
    view_duration: float | None = None


class ExplainRequest(BaseModel):
    contract_id: str = Field(min_length=1)
    query: str | None = None


class RefinePromptRequest(BaseModel):
    apply: bool = True


@lru_cache(maxsize=1)
def get_service() -> InboxService:
    service = InboxService(root_dir=ROOT_DIR)
    service.ensure_default_inbox()
    return service


def _filters(payload: FiltersModel | None) -> dict[str, Any] | None:
    return payload.model_dump() if payload is not None else None


app = FastAPI(title="Contract Inbox Relevance API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:3000",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
def health(service: InboxService = Depends(get_service)) -> dict:
    return {
        "status": "ok",
        "app": "contract-inbox",
        "stats": service.stats(),
    }


@app.get("/api/inboxes")
def list_inboxes(service: InboxService = Depends(get_service)) -> dict:
    return {"inboxes": [inbox.to_dict() for inbox in service.list_inboxes()]}


@app.post("/api/inboxes")
def create_inbox(payload: InboxCreateRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        inbox = service.create_inbox(
            name=payload.name,
            prompt=payload.prompt,
            filters=_filters(payload.filters),
            is_all_contracts=payload.is_all_contracts,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return inbox.to_dict()


@app.get("/api/inboxes/{inbox_id}")
def get_inbox(inbox_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.get_inbox(inbox_id).to_dict()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/api/inboxes/{inbox_id}")
def update_inbox(inbox_id: str, payload: InboxUpdateRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        inbox = service.update_inbox(
            inbox_id,
            name=payload.name,
            prompt=payload.prompt,
            filters=_filters(payload.filters),
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return inbox.to_dict()


@app.delete("/api/inboxes/{inbox_id}")
def delete_inbox(inbox_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.delete_inbox(inbox_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/inboxes/{inbox_id}/search")
def search_inbox(inbox_id: str, payload: SearchRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        results = service.rank_for_inbox(
            inbox_id,
            query_text=payload.query,
            filters=_filters(payload.filters),
            user_id=payload.user_id,
            include_hidden=payload.include_hidden,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EmbeddingUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if payload.top_k is not None:
        results = results[: payload.top_k]
    return {
        "inbox_id": inbox_id,
        "count": len(results),
        "results": [result.to_dict() for result in results],
    }


@app.get("/api/inboxes/{inbox_id}/learning")
def learning(inbox_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        inbox = service.get_inbox(inbox_id)
        status = service.learning_status(inbox_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    status["learning_policy"] = inbox.learning_policy.to_dict() if inbox.learning_policy else None
    return status


@app.post("/api/inboxes/{inbox_id}/learning/recompute")
def recompute(inbox_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.recompute_policy(inbox_id).to_dict()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.put("/api/inboxes/{inbox_id}/threshold")
def set_threshold(inbox_id: str, payload: ThresholdRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.set_live_threshold(inbox_id, payload.value).to_dict()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/inboxes/{inbox_id}/feedback-stats")
def inbox_feedback_stats(inbox_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.feedback_stats(inbox_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/inboxes/{inbox_id}/refine-prompt")
def refine_prompt(inbox_id: str, payload: RefinePromptRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.refine_prompt(inbox_id, apply=payload.apply)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/inboxes/{inbox_id}/explain")
def explain(inbox_id: str, payload: ExplainRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.explain_match(inbox_id, payload.contract_id, query_text=payload.query)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/feedback")
def feedback(payload: FeedbackRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.submit_feedback(
            payload.inbox_id,
            payload.contract_id,
            payload.action,
            payload.match_score,
            hide_reason=payload.hide_reason,
            view_duration=payload.view_duration,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/contracts")
def upsert_contracts(payload: ContractUpsertRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        count = service.upsert_contracts(record.model_dump() for record in payload.contracts)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok", "upserted": count}


@app.get("/api/contracts/{contract_id}")
def contract_state(contract_id: str, user_id: str | None = None, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.contract_state(contract_id, user_id=user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/contracts/{contract_id}/save")
def save_contract(contract_id: str, payload: SaveRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.save_contract(
            contract_id,
            inbox_id=payload.inbox_id,
            match_score=payload.match_score,
            user_id=payload.user_id,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/contracts/{contract_id}/save")
def unsave_contract(contract_id: str, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.unsave_contract(contract_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/contracts/{contract_id}/hide")
def hide_contract(contract_id: str, payload: HideRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.hide_contract(
            contract_id,
            inbox_id=payload.inbox_id,
            match_score=payload.match_score,
            reason=payload.reason,
            user_id=payload.user_id,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/contracts/{contract_id}/unhide")
def unhide_contract(contract_id: str, payload: UnhideRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.unhide_contract(contract_id, inbox_id=payload.inbox_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/contracts/{contract_id}/read")
def mark_read(contract_id: str, payload: ReadRequest, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.mark_read(
            contract_id,
            user_id=payload.user_id,
            inbox_id=payload.inbox_id,
            match_score=payload.match_score,
            view_duration=payload.view_duration,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/contracts/{contract_id}/unread")
def mark_unread(contract_id: str, user_id: str | None = None, service: InboxService = Depends(get_service)) -> dict:
    try:
        return service.mark_unread(contract_id, user_id=user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
