from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import config
from .db import init_db
from .deps import get_services
from .errors import ESignError
from .logger import LoggingMiddleware, get_logger, setup_logging
from .routers import documents, envelopes, signing

setup_logging(config.LOG_LEVEL, use_json=config.LOG_JSON, environment=config.ENVIRONMENT)
logger = get_logger(__name__)

app = FastAPI(title="E-Sign API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(ESignError)
async def esign_error_handler(request: Request, exc: ESignError):
    logger.info("request_rejected", path=request.url.path, error=exc.kind, entity_id=exc.entity_id, audit_event=exc.event)
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


@app.on_event("startup")
def on_startup():
    init_db(get_services().repo.engine)


app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(envelopes.router, prefix="/api/envelopes", tags=["envelopes"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])


@app.get("/")
def root():
    return {"ok": True, "service": "esign-api"}
