import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from coursecompass.config import get_settings
from coursecompass.core.errors import register_error_handlers
from coursecompass.core.redis import close_redis
from coursecompass.middleware import RoleGateMiddleware
from coursecompass.routers import admin, auth, files, upload
from coursecompass.services.file_cleanup import temp_file_reaper

settings = get_settings()


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(temp_file_reaper(settings.cleanup_interval_seconds))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await close_redis()


app = FastAPI(title="CourseCompass API", version="1.0.0", lifespan=lifespan)

# Added first so CORS wraps it and role-gate denials still carry CORS headers.
app.add_middleware(RoleGateMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth.router)
app.include_router(upload.router)
app.include_router(files.router)
app.include_router(admin.router)


@app.get("/")
def root():
    return {"message": "CourseCompass API", "docs": "/docs"}
