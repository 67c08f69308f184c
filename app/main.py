"""
CHAT RELAY MAIN API
===================

This module defines the FastAPI application and all HTTP endpoints. The server
sits between a chat client and a local model server (Ollama): it keeps recent
conversations in memory and forwards each turn to the model server, either
waiting for the full reply or relaying it token by token.

ENDPOINTS (chat routes live under API_PREFIX, default /api/v1):
  GET    /                              - API name and list of endpoints.
  GET    /health                        - Relay process is up (does not touch the model server).
  GET    {prefix}/chat/health           - Can the relay reach the model server?
  GET    {prefix}/chat/models           - Models installed on the model server.
  POST   {prefix}/chat/message          - One turn, full reply in a single JSON body.
  POST   {prefix}/chat/message/stream   - One turn, reply streamed as `data: <json>` events.
  GET    {prefix}/chat/conversation/id  - Full history of one conversation.
  DELETE {prefix}/chat/conversation/id  - Forget a conversation (always succeeds).

CONVERSATIONS:
  Omit conversationId to start a new conversation; the server generates an id and
  returns it. Send it back on the next request to continue. Conversations are kept
  in memory only (at most MAX_CONVERSATIONS, oldest dropped first).

STREAM FORMAT:
  Each event is `data: {"success": true, "chunk": "<full text so far>",
  "conversationId": ..., "messageId": ..., "done": false}` followed by a blank line.
  The last event has "done": true, or "success": false with an "error".

STARTUP:
  The lifespan function creates the ConversationStore, the OllamaService and the
  ChatService. On shutdown it closes the model server connection pool.
"""


import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.exceptions import ChatError, NotFound
from app.models import ChatRequest, ChatResponse
from app.services.chat_service import ChatService
from app.services.conversation_store import ConversationStore
from app.services.ollama_service import OllamaService
from app.utils.frame_decoder import encode_event
from config import API_PREFIX, DEFAULT_MODEL, HOST, LOG_LEVEL, MAX_CONVERSATIONS, OLLAMA_BASE_URL, PORT


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("chat_relay")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
conversation_store: ConversationStore = None
ollama_service: OllamaService = None
chat_service: ChatService = None


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - STARTUP: ConversationStore (empty, bounded), OllamaService (one connection
      pool to the model server), then ChatService which ties them together.
    - SHUTDOWN: close the connection pool. Conversations are not saved.
    """
    global conversation_store, ollama_service, chat_service

    logger.info("=" * 60)
    logger.info("Chat relay - Starting Up...")
    logger.info("=" * 60)

    try:
        conversation_store = ConversationStore(capacity=MAX_CONVERSATIONS)
        ollama_service = OllamaService()
        chat_service = ChatService(conversation_store, ollama_service)

        logger.info("Model server: %s", OLLAMA_BASE_URL)
        logger.info("Default model: %s", DEFAULT_MODEL)
        logger.info("Conversation capacity: %d", MAX_CONVERSATIONS)
        logger.info("API: http://localhost:%d%s/chat", PORT, API_PREFIX)
        logger.info("Docs: http://localhost:%d/docs", PORT)
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down chat relay...")
    if ollama_service:
        await ollama_service.aclose()
    logger.info("Goodbye!")


# -------------------------------------------------------------------------
# FASTAPI APP AND CORS
# -------------------------------------------------------------------------
app = FastAPI(
    title="Chat Relay API",
    description="Relay between a chat client and a local model server",
    lifespan=lifespan
)

# Allow any origin so a browser frontend on another port can call this API.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------------------------------------------------------
# ERROR HANDLERS
# -------------------------------------------------------------------------
# Every error body has the same shape: {"success": false, "error": "..."}.

def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return _error(exc.http_status, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning("Rejected malformed request to %s: %s", request.url.path, exc.errors())
    return _error(400, "Invalid request body")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error(404, "Route not found")
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return _error(500, "Internal server error")


def _require_chat_service() -> ChatService:
    if not chat_service:
        raise ChatError("Chat service not initialized", code="SERVICE_UNAVAILABLE", http_status=503)
    return chat_service


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "Chat Relay API",
        "endpoints": {
            f"{API_PREFIX}/chat/health": "Model server reachability",
            f"{API_PREFIX}/chat/models": "Installed models",
            f"{API_PREFIX}/chat/message": "Send a message, get the full reply",
            f"{API_PREFIX}/chat/message/stream": "Send a message, stream the reply",
            f"{API_PREFIX}/chat/conversation/{{id}}": "Get (GET) or clear (DELETE) a conversation",
            "/health": "Relay health check"
        }
    }


@app.get("/health")
async def health():
    """The relay itself is running. Model server reachability is /chat/health."""
    return {
        "success": True,
        "message": "Server is running",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


router = APIRouter(prefix="/chat")


@router.get("/health")
async def chat_health():
    """Probe the model server. Always 200; `connected` tells whether it answered."""
    service = _require_chat_service()
    return await service.ollama.check_connection()


@router.get("/models")
async def list_models():
    """List model names from the model server, or {success: false, error} if it is unreachable."""
    service = _require_chat_service()
    try:
        models = await service.ollama.list_models()
    except ChatError as e:
        return {"success": False, "models": [], "error": e.message}
    return {"success": True, "models": models}


@router.post("/message")
async def send_message(request: ChatRequest):
    """
    Single-shot chat: wait for the model's full reply.

    REQUEST BODY:
    {"message": "Hello", "model": "llama2", "conversationId": "optional-id"}

    RESPONSE:
    {"success": true, "conversationId": "...",
     "message": {"id": "...", "role": "assistant", "content": "...", "timestamp": "..."},
     "model": "llama2"}

    Errors come back as {"success": false, "error": "..."} with 400 (empty message),
    502 (model server unreachable or failed) or 504 (timed out).
    """
    service = _require_chat_service()
    conversation, assistant = await service.send_message(
        request.message, request.model, request.conversation_id
    )
    response = ChatResponse(conversation_id=conversation.id, message=assistant, model=conversation.model)
    return response.to_wire()


@router.post("/message/stream")
async def send_message_stream(body: ChatRequest, request: Request):
    """
    Streaming chat: relay the reply as it is generated.

    Validation happens before the stream opens, so an empty message gets a plain
    400 JSON error. After that every outcome, including model server failures,
    arrives as an event in the stream.
    """
    service = _require_chat_service()
    session = service.start_stream(body.message, body.model, body.conversation_id)
    logger.info("Streaming turn started for conversation %s", session.conversation.id)

    async def event_stream():
        async for event in session.run(is_disconnected=request.is_disconnected):
            yield encode_event(event.to_wire())

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/conversation/{conversation_id}")
async def get_conversation(conversation_id: str):
    """Full message history for one conversation, or 404 if the server does not have it."""
    service = _require_chat_service()
    conversation = service.get_conversation(conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    return {"success": True, "conversation": conversation.to_wire()}


@router.delete("/conversation/{conversation_id}")
async def clear_conversation(conversation_id: str):
    """Forget a conversation. Unknown ids succeed too."""
    service = _require_chat_service()
    service.clear_conversation(conversation_id)
    return {"success": True, "message": "Conversation cleared"}


app.include_router(router, prefix=API_PREFIX)


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m app.main"""
    uvicorn.run(
        "app.main:app",
        host=HOST,
        port=PORT,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
