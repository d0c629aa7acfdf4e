# Run from project root: uvicorn refchat.main:app --reload

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from refchat.api.routes import router
from refchat.core.config import RUN_INTEGRITY_ON_STARTUP
from refchat.services.chat_service import get_chat_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if RUN_INTEGRITY_ON_STARTUP:
        reports = await get_chat_service().integrity.check_all()
        logger.info("[main:lifespan] integrity pass sessions=%d recovered=%d",
                    len(reports), sum(len(r.recovered) for r in reports))
    yield


app = FastAPI(title="Reference Chat Backend", lifespan=lifespan)
app.include_router(router)
