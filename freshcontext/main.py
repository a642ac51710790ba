from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from freshcontext.api.routes import chat, models, research, settings as settings_routes
from freshcontext.config import settings
from freshcontext.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"FreshContext starting; generation backend {settings.llm_base_url} ({settings.llm_api_style})")
    yield
    logger.info("FreshContext shutting down")


app = FastAPI(
    title="FreshContext",
    description="Fresh web context for a conversational generation backend",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)
app.include_router(research.router)
app.include_router(models.router)
app.include_router(settings_routes.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "freshcontext"}
