from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.staticfiles import StaticFiles

from menu_media.config import get_settings
from menu_media.handlers import upload_handler
from menu_media.services.pipeline import ImagePipeline, get_pipeline

settings = get_settings()


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    yield
    if get_pipeline.cache_info().currsize:
        get_pipeline().shutdown()


app = FastAPI(title="Menu Media API", lifespan=lifespan)

app.include_router(upload_handler.router)
app.mount(
    settings.local_url_prefix,
    StaticFiles(directory=settings.local_storage_root, check_dir=False),
    name="uploads",
)


@app.get("/healthz")
def healthz(pipeline: ImagePipeline = Depends(get_pipeline)):
    return {"status": "ok", "backends": pipeline.resolver.check_backends()}
