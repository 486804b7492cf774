"""
FastAPI Server for Lumora
Exposes the conversation pipeline (upload, dataset selection, questions) as REST endpoints
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response
from pydantic import BaseModel

from conversation import Conversation
from lumora_config import configure_logging, settings
from lumora_errors import (
    ConversationBusyError,
    DatasetNotFoundError,
    FileDecodeError,
    LumoraError,
    MissingAPIKeyError,
    UnsupportedInputError,
)
from lumora_types import AppConfig, DEFAULT_MODEL, LLMProvider

# Setup logging
configure_logging(settings)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Lumora API",
    description="Conversational data analysis over uploaded CSV / Excel files",
    version="1.0.0"
)

# In-memory only; nothing survives a restart
conversations: Dict[str, Conversation] = {}


# ============================================================================
# Request/Response Models
# ============================================================================

class ConfigRequest(BaseModel):
    """Provider settings for a session"""
    provider: LLMProvider = LLMProvider.OPENROUTER
    api_key: Optional[str] = None
    model: Optional[str] = DEFAULT_MODEL


class QuestionRequest(BaseModel):
    question: str


class SessionResponse(BaseModel):
    """Session information"""
    session_id: str
    config: Dict[str, Any]
    active_dataset_id: Optional[str]
    datasets: List[Dict[str, Any]]
    message_count: int
    busy: bool


# ============================================================================
# Helper Functions
# ============================================================================

def get_conversation(session_id: str) -> Conversation:
    """Get conversation or raise 404"""
    if session_id not in conversations:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return conversations[session_id]


def session_response(session_id: str, conversation: Conversation) -> SessionResponse:
    return SessionResponse(
        session_id=session_id,
        config=conversation.config.to_public_dict(),
        active_dataset_id=conversation.active_dataset_id,
        datasets=[ds.to_dict() for ds in conversation.datasets],
        message_count=len(conversation.messages),
        busy=conversation.is_busy
    )


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "service": "Lumora API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "POST /sessions": "Create new session",
            "GET /sessions/{id}": "Get session info",
            "PUT /sessions/{id}/config": "Set provider, API key and model",
            "POST /sessions/{id}/datasets": "Upload CSV / Excel file",
            "GET /sessions/{id}/datasets": "List datasets",
            "POST /sessions/{id}/datasets/{dataset_id}/select": "Switch active dataset",
            "POST /sessions/{id}/messages": "Ask a question",
            "GET /sessions/{id}/messages": "Get transcript",
            "GET /sessions/{id}/export": "Download transcript as JSON",
        }
    }


@app.post("/sessions", response_model=SessionResponse)
async def create_session():
    session_id = f"session_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"
    conversation = Conversation(config=settings.default_app_config())
    conversations[session_id] = conversation

    logger.info(f"Created session: {session_id}")
    return session_response(session_id, conversation)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session_info(session_id: str):
    return session_response(session_id, get_conversation(session_id))


@app.put("/sessions/{session_id}/config")
async def update_config(session_id: str, request: ConfigRequest):
    conversation = get_conversation(session_id)
    config = AppConfig(
        provider=request.provider,
        api_key=request.api_key if request.api_key is not None else conversation.config.api_key,
        model=request.model or DEFAULT_MODEL
    )
    try:
        conversation.update_config(config)
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"session_id": session_id, "config": config.to_public_dict()}


@app.post("/sessions/{session_id}/datasets")
async def upload_dataset(session_id: str, file: UploadFile = File(...)):
    """
    Upload and ingest a data file (CSV or Excel)

    The new dataset becomes the active one.
    """
    conversation = get_conversation(session_id)
    content = await file.read()

    try:
        # parsing and loading block, keep them off the event loop
        dataset = await run_in_threadpool(conversation.upload, file.filename or "", content)
    except UnsupportedInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileDecodeError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LumoraError as e:
        logger.error(f"Ingestion failed: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "session_id": session_id,
        "dataset": dataset.to_dict(),
        "suggestions": conversation.suggestions()
    }


@app.get("/sessions/{session_id}/datasets")
async def list_datasets(session_id: str):
    conversation = get_conversation(session_id)
    return {
        "active_dataset_id": conversation.active_dataset_id,
        "datasets": [ds.to_dict() for ds in conversation.datasets],
        "count": len(conversation.datasets)
    }


@app.post("/sessions/{session_id}/datasets/{dataset_id}/select")
async def select_dataset(session_id: str, dataset_id: str):
    conversation = get_conversation(session_id)
    try:
        dataset = conversation.select_dataset(dataset_id)
    except DatasetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "active_dataset_id": dataset.id,
        "dataset": dataset.to_dict(),
        "suggestions": conversation.suggestions()
    }


@app.post("/sessions/{session_id}/messages")
def ask_question(session_id: str, request: QuestionRequest):
    """
    Run one turn. Provider and SQL failures come back as an assistant
    message, not as an HTTP error.
    """
    conversation = get_conversation(session_id)
    try:
        reply = conversation.submit(request.question)
    except MissingAPIKeyError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if reply is None:
        raise HTTPException(
            status_code=409,
            detail="Question not submitted: it is empty, no dataset is selected, or a turn is in progress"
        )
    return {"session_id": session_id, "message": reply.to_dict()}


@app.get("/sessions/{session_id}/messages")
async def get_messages(session_id: str):
    conversation = get_conversation(session_id)
    return {
        "session_id": session_id,
        "messages": [m.to_dict() for m in conversation.messages],
        "count": len(conversation.messages)
    }


@app.get("/sessions/{session_id}/export")
async def export_messages(session_id: str):
    conversation = get_conversation(session_id)
    return Response(
        content=conversation.export_transcript(),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{session_id}.json"'}
    )


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
