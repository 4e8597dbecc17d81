"""HTTP API for Koya webhooks.

Example:
    ```bash
    uvicorn koya.api:app --port 8000
    ```
"""

from .app import app, create_app, register_exception_handlers
from .router import router, set_service

__all__ = ["app", "create_app", "register_exception_handlers", "router", "set_service"]
