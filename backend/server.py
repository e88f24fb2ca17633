from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).parent
# env must be loaded before the routers read JWT / Supabase / Evolution settings
load_dotenv(ROOT_DIR / '.env')

from .routes import connections_router, messages_router, webhooks_router  # noqa: E402
from .utils.db_helpers import is_supabase_not_configured_error, is_transient_db_error  # noqa: E402
from .whatsapp.errors import WhatsAppError  # noqa: E402

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="WhatsApp Connections API")


def resolve_cors_allow_origins() -> List[str]:
    raw = (os.getenv("CORS_ALLOW_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Workspace-Id"],
)


# ==================== ERROR HANDLERS ====================

@app.exception_handler(WhatsAppError)
async def whatsapp_error_handler(request: Request, exc: WhatsAppError):
    level = logging.WARNING if exc.http_status < 500 else logging.ERROR
    logger.log(level, f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_response())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    if is_supabase_not_configured_error(exc) or is_transient_db_error(exc):
        return JSONResponse(status_code=503, content={"success": False, "error": "Banco de dados indisponível."})
    return JSONResponse(status_code=500, content={"success": False, "error": "Erro interno do servidor."})


# Healthcheck endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "whatsapp-connections"}


api_router = APIRouter(prefix="/api")
api_router.include_router(connections_router)
api_router.include_router(webhooks_router)
api_router.include_router(messages_router)
app.include_router(api_router)
