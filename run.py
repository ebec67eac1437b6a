"""Entry point for the cardsync reconciliation service."""
import logging

from dotenv import load_dotenv

load_dotenv()

import uvicorn

from cardsync.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

if __name__ == "__main__":
    uvicorn.run("cardsync.main:app", host=settings.HOST, port=settings.PORT)
