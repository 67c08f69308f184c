"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (app.main) calls these services;
they don't handle HTTP routing, only chat flow, model server calls and state.

MODULES:
    chat_service       - ChatService (single-shot and streaming turns) and RelaySession
    conversation_store - ConversationStore: bounded in-memory conversation map
    ollama_service     - OllamaService: async HTTP client for the model server
"""
