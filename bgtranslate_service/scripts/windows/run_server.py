import os
import uvicorn

# Import the ASGI app directly so we don't rely on console scripts/shims
from bgtranslate_service.app.main import app

host = os.environ.get("APP_HOST", "0.0.0.0")
port = int(os.environ.get("APP_PORT", "8080"))

if __name__ == "__main__":
    # Single process: running jobs and the resume sweep live in this event loop
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )
