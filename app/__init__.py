"""
CHAT RELAY APPLICATION PACKAGE
==============================

This directory is the main Python package for the chat relay backend.

  from app.main import app
  from app.models import ChatRequest
  from app.services.chat_service import ChatService

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/chat/message, /chat/message/stream, ...).
    models.py     - Pydantic models for requests, responses, conversations and stream events.
    exceptions.py - ChatError and its subclasses (validation, upstream, not found, abort).
    services/     - Business logic: chat turns, conversation store, model server client.
    utils/        - Helpers: frame decoding for both streaming hops.
"""
