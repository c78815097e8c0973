import logging

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from quiz_session.config import settings  # noqa: E402

# Configure Logging - set LOG_LEVEL=DEBUG to see sync queue coalescing
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


if __name__ == "__main__":
    logger.info(f"Serving quiz session bridge on {settings.bridge_host}:{settings.bridge_port}")
    uvicorn.run(
        "quiz_session.main:app",
        host=settings.bridge_host,
        port=settings.bridge_port,
        log_level=settings.log_level.lower(),
    )
