"""
Entrypoint for running the backend server.
"""
import uvicorn

from registry.core.config import settings
from registry.main import app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
