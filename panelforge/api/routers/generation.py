"""Generation router for the Panelforge API.

Run, retry, cancel and inspect the generation job of a session. The session is
chosen by the ``X-Session-ID`` header; each session has its own job and
persisted state.
"""

import asyncio
import json
from typing import AsyncGenerator, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from panelforge.core.constants import DEFAULT_SESSION_ID, GENERATION_RATE_LIMIT, ComicStyle, Stage
from panelforge.core.exceptions import (
    ContentSafetyRejection,
    PanelforgeError,
    PipelineBusyError,
    ProviderError,
    ValidationError,
)
from panelforge.core.logging_config import bind_session, get_logger
from panelforge.core.models import UploadedReference

from ..sessions import TERMINAL_EVENTS, SessionContext, SessionRegistry

logger = get_logger("api.generation")

router = APIRouter()

# Rate limiter for endpoints that call providers
limiter = Limiter(key_func=get_remote_address)


class UploadModel(BaseModel):
    id: str
    name: str = ""
    image: str
    kind: str = "character"

    def to_reference(self) -> UploadedReference:
        return UploadedReference(id=self.id, name=self.name, image=self.image, kind=self.kind)


class RunRequest(BaseModel):
    story: str
    style: ComicStyle = ComicStyle.MANGA
    no_dialogue: bool = False
    character_uploads: List[UploadModel] = Field(default_factory=list)
    setting_uploads: List[UploadModel] = Field(default_factory=list)
    # Resume options
    resume_from_stage: Optional[Stage] = None
    resume_from_item_index: Optional[int] = Field(default=None, ge=1)


class GenerationResponse(BaseModel):
    success: bool
    message: str
    session_id: str


async def get_session(request: Request, x_session_id: Optional[str] = Header(None)) -> SessionContext:
    """Resolve the session named by the X-Session-ID header."""
    registry: SessionRegistry = request.app.state.sessions
    try:
        session = await registry.get(x_session_id or DEFAULT_SESSION_ID)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    bind_session(session.session_id)
    return session


def _http_error(error: PanelforgeError) -> HTTPException:
    if isinstance(error, PipelineBusyError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, ContentSafetyRejection):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, ProviderError):
        return HTTPException(status_code=502, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


@router.post("/run", response_model=GenerationResponse)
@limiter.limit(GENERATION_RATE_LIMIT)
async def run_generation(
    request: Request,
    run_request: RunRequest,
    background_tasks: BackgroundTasks,
    session: SessionContext = Depends(get_session),
):
    """Start a run in the background.

    A fresh run discards every previous output. With ``resume_from_stage``
    the earlier stages are kept and the run starts at that stage (and, for
    characters or panels, at ``resume_from_item_index``).
    """
    orchestrator = session.orchestrator
    try:
        plan = await orchestrator.prepare_run(
            run_request.story,
            run_request.style,
            run_request.no_dialogue,
            [u.to_reference() for u in run_request.character_uploads],
            [u.to_reference() for u in run_request.setting_uploads],
            resume_from_stage=run_request.resume_from_stage,
            resume_from_item_index=run_request.resume_from_item_index,
        )
    except PanelforgeError as e:
        raise _http_error(e)

    background_tasks.add_task(orchestrator.execute, plan)
    logger.info(f"Session '{session.session_id}': run started at '{plan.stage.value}'")
    return GenerationResponse(success=True, message="Generation started", session_id=session.session_id)


@router.post("/retry", response_model=GenerationResponse)
@limiter.limit(GENERATION_RATE_LIMIT)
async def retry_generation(
    request: Request,
    background_tasks: BackgroundTasks,
    session: SessionContext = Depends(get_session),
):
    """Resume from the failed stage and item with the inputs of the failed run."""
    orchestrator = session.orchestrator
    try:
        plan = await orchestrator.prepare_retry()
    except PanelforgeError as e:
        raise _http_error(e)

    background_tasks.add_task(orchestrator.execute, plan)
    return GenerationResponse(
        success=True,
        message=f"Retrying from {plan.stage.value}",
        session_id=session.session_id,
    )


@router.post("/cancel")
async def cancel_generation(session: SessionContext = Depends(get_session)):
    """Request cancellation of the running job."""
    if session.orchestrator.cancel():
        return {"success": True, "message": "Cancellation requested"}
    return {"success": False, "message": "No generation in progress"}


@router.get("/status")
async def get_status(session: SessionContext = Depends(get_session)):
    """Phase, caption, error and progress counts, without images."""
    return session.orchestrator.job.summary()


@router.get("/job")
async def get_job(include_images: bool = True, session: SessionContext = Depends(get_session)):
    """The full job."""
    return session.orchestrator.job.to_dict(include_images=include_images)


@router.delete("/job")
async def reset_job(session: SessionContext = Depends(get_session)):
    """Discard the job and its persisted state."""
    try:
        await session.orchestrator.reset()
    except PanelforgeError as e:
        raise _http_error(e)
    return {"success": True, "message": "Job cleared"}


@router.post("/characters/{name}/regenerate")
@limiter.limit(GENERATION_RATE_LIMIT)
async def regenerate_character(
    request: Request,
    name: str,
    session: SessionContext = Depends(get_session),
):
    """Regenerate one character reference."""
    try:
        reference = await session.orchestrator.regenerate_single_character(name)
    except PanelforgeError as e:
        raise _http_error(e)
    return reference.to_dict()


@router.post("/panels/{panel_number}/regenerate")
@limiter.limit(GENERATION_RATE_LIMIT)
async def regenerate_panel(
    request: Request,
    panel_number: int,
    session: SessionContext = Depends(get_session),
):
    """Regenerate one panel."""
    try:
        panel = await session.orchestrator.regenerate_single_panel(panel_number)
    except PanelforgeError as e:
        raise _http_error(e)
    return panel.to_dict()


@router.get("/storage")
async def get_storage_info(session: SessionContext = Depends(get_session)):
    """Whether saved state exists for the session, and when it was written."""
    persistence = session.orchestrator.persistence
    if persistence is None:
        return {"hasData": False, "timestamp": None}
    return persistence.storage_info().to_dict()


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def event_generator(session: SessionContext, request: Request) -> AsyncGenerator[str, None]:
    """Yield the session's progress events until the run completes or fails."""
    queue = session.subscribe()
    try:
        yield format_sse("status", session.orchestrator.job.summary())
        if not session.orchestrator.job.is_generating:
            return

        while True:
            if await request.is_disconnected():
                logger.info(f"SSE client disconnected from session '{session.session_id}'")
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=30.0)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue

            yield format_sse(event.event, event.data)
            if event.event in TERMINAL_EVENTS:
                break
    finally:
        session.unsubscribe(queue)


@router.get("/events")
async def stream_events(request: Request, session: SessionContext = Depends(get_session)):
    """Stream progress events.

    Event types:
    - status: phase or caption changed
    - analysis: story analysis finished
    - character: a character reference was generated
    - layout: panel layout planned
    - panel: a panel was generated
    - error: the run failed or was rejected
    - complete: every panel has an image
    """
    return StreamingResponse(
        event_generator(session, request),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
