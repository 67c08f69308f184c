"""
RUN SCRIPT - Start the chat relay server
========================================

PURPOSE:
  Single entry point to start the backend.

WHAT IT DOES:
  - Imports the FastAPI app from app.main.
  - Runs it with uvicorn on HOST/PORT from config (default 0.0.0.0:3001).
  - reload=True means any change to Python files will restart the server (handy for development).

USAGE:
  python run.py

  Then point a client at http://localhost:3001/api/v1/chat, or run: python chat_cli.py
  API docs: http://localhost:3001/docs

NOTE:
  The model server must be running (e.g. `ollama serve`). Set OLLAMA_BASE_URL in .env
  if it is not on http://localhost:11434.
"""

import uvicorn

from config import HOST, PORT

# ------------------------------------------------------------------------------
# ENTRY POINT
# ------------------------------------------------------------------------------
if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",   # String path to the FastAPI app instance (module:variable).
        host=HOST,        # 0.0.0.0 by default so other devices on the network can connect.
        port=PORT,
        reload=True       # Auto-restart when .py files change (useful during development).
    )
