import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session

from config import get_settings
from db import create_db_and_tables, dispose_engine, engine
from errors import InvariantViolation, LedgerError
from routers import inventory, listings, organizations, requests, stream
from routers.organizations import seed_admin

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FoodRescue")


@app.on_event("startup")
def on_startup() -> None:
    create_db_and_tables()
    if settings.seed_admin:
        with Session(engine) as session:
            seed_admin(session, settings.admin_name, settings.admin_email)
    logger.info("FoodRescue started")


@app.on_event("shutdown")
def on_shutdown() -> None:
    dispose_engine()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, InvariantViolation):
        logger.error("Invariant violation on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(organizations.router, prefix="/organizations")
app.include_router(listings.router, prefix="/listings")
app.include_router(requests.router, prefix="/requests")
app.include_router(inventory.router, prefix="/inventory")
app.include_router(stream.router)
