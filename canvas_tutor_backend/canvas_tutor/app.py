from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
import logging
import uuid
import asyncio
from typing import Optional, Set

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS, DEFAULT_LANGUAGE_CODE
from .exceptions import (
    CapabilityUnavailable,
    InvalidScriptReference,
    MalformedCompilerOutput,
    ToolLoopExceeded,
    TutorError,
)
from .gateway import Gateway, get_gateway
from .compiler import should_refresh_summary, summarize_conversation
from .models import (
    ConversationSummaryRequest,
    HistoryMessage,
    ModuleRecord,
    ModuleRequest,
    ModuleStatus,
    SessionTurnRequest,
    dump_script,
)
from .module_store import ModuleStore, archive_filename, export_archive, import_archive, record_progress
from .orchestrator import generate_title, run_module, run_session_turn
from .progress import ProgressChannel

logger = logging.getLogger(__name__)

app = FastAPI(title="Canvas Tutor Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)

_store: Optional[ModuleStore] = None

def get_store() -> ModuleStore:
    global _store
    if _store is None:
        _store = ModuleStore()
    return _store

# Strong references so background module runs are not garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _status_for(error: TutorError) -> int:
    if isinstance(error, CapabilityUnavailable):
        return 503
    if isinstance(error, InvalidScriptReference):
        return 422
    if isinstance(error, (ToolLoopExceeded, MalformedCompilerOutput)):
        return 502
    return 500


@app.exception_handler(TutorError)
async def tutor_error_handler(request: Request, exc: TutorError):
    status = _status_for(exc)
    logger.error(f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


class DocumentBody(BaseModel):
    text: str


@app.get("/health")
def health():
    keys_ok = has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "has_keys": keys_ok}


@app.post("/v1/documents/{document_id}")
async def index_document(document_id: str, body: DocumentBody, gateway: Gateway = Depends(get_gateway)):
    if not body.text.strip():
        raise HTTPException(400, "text is required")
    chunks = await gateway.index_document(document_id, body.text)
    return {"document_id": document_id, "chunks": chunks}


@app.post("/v1/sessions:turn")
async def session_turn(req: SessionTurnRequest, gateway: Gateway = Depends(get_gateway)):
    if not req.prompt.strip():
        raise HTTPException(400, "prompt is required")
    logger.info(f"Session turn for prompt: {req.prompt[:50]}...")
    history = req.history + [HistoryMessage(sender="user", text=req.prompt)]
    if not should_refresh_summary(len(history)):
        commands = await run_session_turn(gateway, req)
        return {"commands": dump_script(commands)}

    logger.info(f"Refreshing conversation summary at {len(history)} messages")
    commands, summary = await asyncio.gather(
        run_session_turn(gateway, req),
        summarize_conversation(gateway, history),
    )
    body = {"commands": dump_script(commands)}
    if summary:
        body["summary"] = summary
    return body


@app.post("/v1/sessions:summarize")
async def summarize_session(req: ConversationSummaryRequest, gateway: Gateway = Depends(get_gateway)):
    summary = await summarize_conversation(gateway, req.history)
    return {"summary": summary}


async def _generate_module(gateway: Gateway, store: ModuleStore, req: ModuleRequest, module_id: str):
    channel = ProgressChannel()
    subscriber = asyncio.create_task(record_progress(channel, store))
    try:
        await run_module(gateway, req, channel, module_id)
        logger.info(f"Background module generation completed for {module_id}")
    except Exception as e:
        # Already published as the failed event; the record carries the message
        logger.error(f"Background module generation failed for {module_id}: {str(e)}")
    finally:
        await subscriber


@app.post("/v1/modules:start")
async def start_module(
    req: ModuleRequest,
    gateway: Gateway = Depends(get_gateway),
    store: ModuleStore = Depends(get_store),
):
    if not req.prompt.strip():
        raise HTTPException(400, "prompt is required")
    logger.info(f"Starting module for prompt: {req.prompt[:50]}...")

    module_id = str(uuid.uuid4())
    title = await generate_title(gateway, req.prompt)
    record = ModuleRecord(
        module_id=module_id,
        title=title,
        prompt=req.prompt,
        step_count=req.resolved_step_count(),
        language=req.language_code or DEFAULT_LANGUAGE_CODE,
        message="Module generation started",
    )
    await store.set_module(record)

    task = asyncio.create_task(_generate_module(gateway, store, req, module_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    return {"module_id": module_id, "title": title, "status": ModuleStatus.GENERATING.value}


async def _require_module(store: ModuleStore, module_id: str) -> ModuleRecord:
    record = await store.get_module(module_id)
    if not record:
        raise HTTPException(404, "Module not found")
    return record


@app.get("/v1/modules/{module_id}")
async def module_status(module_id: str, store: ModuleStore = Depends(get_store)):
    record = await _require_module(store, module_id)
    return record.model_dump(mode="json", exclude={"script"})


@app.get("/v1/modules/{module_id}/play")
async def play_module(module_id: str, store: ModuleStore = Depends(get_store)):
    record = await _require_module(store, module_id)
    if record.status != ModuleStatus.COMPLETED:
        raise HTTPException(409, f"Module is {record.status.value}, not ready to play")
    return {"module_id": module_id, "title": record.title, "commands": record.script}


@app.get("/v1/modules/{module_id}/download")
async def download_module(module_id: str, store: ModuleStore = Depends(get_store)):
    record = await _require_module(store, module_id)
    if record.status != ModuleStatus.COMPLETED:
        raise HTTPException(409, f"Module is {record.status.value}, not ready to download")
    filename = archive_filename(record.title)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=export_archive(record), media_type="application/zip", headers=headers)


@app.post("/v1/modules:import")
async def import_module(request: Request, store: ModuleStore = Depends(get_store)):
    data = await request.body()
    if not data:
        raise HTTPException(400, "archive body is required")
    try:
        record = import_archive(data)
    except (ValueError, ValidationError) as e:
        raise HTTPException(400, str(e))
    await store.set_module(record)
    logger.info(f"Imported module {record.module_id}: {record.title}")
    return record.model_dump(mode="json", exclude={"script"})
