"""
Run the chat agent API.

Usage:
    python -m smart_chat_agent

Reads settings from the environment (and .env). HOST and PORT pick the
listen address (default 0.0.0.0:8000).
"""

import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "smart_chat_agent.api.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
