from fastapi import FastAPI

from stockledger.app.api.v1.router import router as v1_router
from stockledger.app.core.config import get_settings
from stockledger.app.core.logging import setup_logging

settings = get_settings()
setup_logging(settings.log_level)

app = FastAPI(title=settings.app_name, version="0.1.0")
app.include_router(v1_router, prefix="/v1")
