"""
Dental Scheduling Engine - Main Application
Booking, rescheduling queue and master-data webhooks
"""

import logging

from dotenv import load_dotenv

# Load environment variables FIRST before importing modules that need them
load_dotenv()

# Configure centralized logging (container-aware: no timestamps in Docker/Fly.io)
from app.utils.logging_config import configure_logging  # noqa: E402
configure_logging()
logger = logging.getLogger(__name__)

from app.app_factory import create_app  # noqa: E402

app = create_app()

logger.info("🚀 Scheduling engine application created")


if __name__ == "__main__":
    import os
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )
