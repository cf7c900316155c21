"""
Startup script for the Logomark API
Reads HOST/PORT from environment and starts uvicorn server
"""
import logging
import os
import uvicorn
from app.main import app

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    logger.info(f"Starting Logomark API server on {host}:{port}")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info"
    )
