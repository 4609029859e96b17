import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from marketplace import settings
from marketplace.binance_service import verify_webhook_signature
from marketplace.database import Base, SessionLocal, engine, get_db
from marketplace.errors import MarketplaceError, ValidationError
from marketplace.payments import handle_webhook
from marketplace.routes import routers
from marketplace.seed import seed_database

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_database(db)
    finally:
        db.close()
    logger.info("Database ready for connections")
    yield


app = FastAPI(title="Digital Goods Marketplace", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

for router in routers:
    app.include_router(router)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message, exc_info=exc)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path,
                       exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else "Invalid request"
    logger.warning("%s %s rejected (400): %s", request.method, request.url.path, message)
    return JSONResponse(status_code=400, content={"detail": message})


@app.get("/")
def root():
    return {"message": "Backend is running. See /docs for the API."}


@app.get("/health")
def health():
    return {"status": "OK"}


@app.post("/payments/webhook")
async def binance_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()

    await run_in_threadpool(verify_webhook_signature, request.headers, payload)
    try:
        event = json.loads(payload)
    except ValueError:
        raise ValidationError("Invalid payload")

    # The reconciliation blocks on database locks, keep it off the event loop
    await run_in_threadpool(handle_webhook, db, event)
    return {"returnCode": "SUCCESS", "returnMessage": None}
