"""Chat API: host events, scoring, state, injections and session reports."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from backend.app.core.controller import ChatController, CycleResult, DriftService
from backend.app.core.host import InMemoryHost
from backend.app.core.report import compare_reports, export_all_reports, export_report, load_report_index
from backend.app.models.dimensions import ActiveDimension
from backend.app.models.events import CharacterProfile, HostEvent, Turn

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chats"])


class HostSnapshot(BaseModel):
    """Optional view of the host's chat sent alongside a request; replaces what the API holds."""
    turns: Optional[List[Turn]] = None
    profile: Optional[CharacterProfile] = None
    model_id: Optional[str] = None


class EventRequest(HostSnapshot):
    event: HostEvent


class ScoreRequest(HostSnapshot):
    index: Optional[int] = None  # omitted -> retroactive scoring of the whole chat
    force: bool = True


class DimensionsRequest(BaseModel):
    dimensions: List[ActiveDimension] = Field(default_factory=list)


class ReportRequest(BaseModel):
    insights: bool = True


class CompareRequest(BaseModel):
    before: int = Field(description="Index into the report index")
    after: int


def get_service(request: Request) -> DriftService:
    return request.app.state.service


def _host_for(request: Request, chat_id: str, snapshot: HostSnapshot | None = None) -> InMemoryHost:
    hosts: Dict[str, InMemoryHost] = request.app.state.hosts
    host = hosts.get(chat_id)
    if host is None:
        host = InMemoryHost()
        hosts[chat_id] = host
    if snapshot is not None:
        if snapshot.turns is not None:
            host.load_turns(snapshot.turns)
        if snapshot.profile is not None:
            host.character = snapshot.profile
        if snapshot.model_id:
            host.model = snapshot.model_id
    return host


def _controller(request: Request, chat_id: str, snapshot: HostSnapshot | None = None) -> ChatController:
    return get_service(request).controller(chat_id, _host_for(request, chat_id, snapshot))


@router.post("/chats/{chat_id}/events")
async def post_event(chat_id: str, body: EventRequest, request: Request) -> Dict[str, Any]:
    service = get_service(request)
    target = getattr(body.event, "chat_id", None) or chat_id
    host = _host_for(request, target, body)
    results = await service.dispatch(target, body.event, host)
    return {"chat_id": target, "results": [r.to_dict() for r in results]}


@router.post("/chats/{chat_id}/score")
async def post_score(chat_id: str, body: ScoreRequest, request: Request) -> Dict[str, Any]:
    ctl = _controller(request, chat_id, body)
    if body.index is None:
        result = await ctl.score_chat_retroactively()
    else:
        result = await ctl.score_and_process_message(body.index, force=body.force)
    return result.to_dict()


@router.post("/chats/{chat_id}/calibrate")
async def post_calibrate(chat_id: str, body: HostSnapshot, request: Request) -> Dict[str, Any]:
    ctl = _controller(request, chat_id, body)
    result = CycleResult()
    ok = await ctl.calibrate(result, force=True)
    if not ok:
        raise HTTPException(status_code=422, detail="Calibration produced no dimensions")
    return {"dimensions": [d.model_dump(mode="json") for d in ctl.state.dimensions], "notices": result.notices}


@router.put("/chats/{chat_id}/dimensions")
async def put_dimensions(chat_id: str, body: DimensionsRequest, request: Request) -> Dict[str, Any]:
    ctl = _controller(request, chat_id)
    ctl.set_dimensions(body.dimensions, manual=True)
    return {"dimensions": [d.model_dump(mode="json") for d in ctl.state.dimensions], "manually_edited": True}


@router.get("/chats/{chat_id}/state")
async def get_state(chat_id: str, request: Request) -> Dict[str, Any]:
    return _controller(request, chat_id).state.to_stored()


@router.get("/chats/{chat_id}/injections")
async def get_injections(chat_id: str, request: Request) -> Dict[str, Any]:
    host = _host_for(request, chat_id)
    return {
        key: {"text": inj.text, "position": inj.position, "depth": inj.depth, "role": inj.role}
        for key, inj in host.injections.items()
    }


@router.post("/chats/{chat_id}/report")
async def post_report(chat_id: str, request: Request, body: Optional[ReportRequest] = None) -> Dict[str, Any]:
    ctl = _controller(request, chat_id)
    report = await ctl.generate_report(with_insights=body.insights if body else True)
    if report is None:
        raise HTTPException(status_code=409, detail="No scored messages yet. Score some messages first.")
    return report.model_dump(mode="json")


@router.post("/chats/{chat_id}/report/export")
async def post_report_export(chat_id: str, request: Request) -> Dict[str, Any]:
    ctl = _controller(request, chat_id)
    path = export_report(ctl.state, ctl.host.profile(), request.app.state.export_dir)
    if path is None:
        raise HTTPException(status_code=409, detail="No report generated yet.")
    return {"path": str(path)}


@router.get("/reports/index")
async def get_report_index(request: Request) -> List[Dict[str, Any]]:
    return [e.model_dump(mode="json") for e in load_report_index(get_service(request).settings_store)]


@router.post("/reports/export")
async def post_reports_export(request: Request) -> Dict[str, Any]:
    path = export_all_reports(get_service(request).settings_store, request.app.state.export_dir)
    if path is None:
        raise HTTPException(status_code=409, detail="No reports in the index.")
    return {"path": str(path)}


@router.post("/reports/compare")
async def post_reports_compare(body: CompareRequest, request: Request) -> Dict[str, Any]:
    index = load_report_index(get_service(request).settings_store)
    try:
        before, after = index[body.before], index[body.after]
    except IndexError as exc:
        raise HTTPException(status_code=404, detail="Report index entry not found") from exc
    return compare_reports(before, after).model_dump(mode="json")
