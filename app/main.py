# app/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.api import api_router
from app.core.config import settings
from app.core.limiter import limiter
from app.db.session import SessionLocal
from app.scheduler import init_scheduler, shutdown_scheduler
from app.services.ticketing.errors import TicketError
from app.services.ticketing.runtime import init_ticket_runtime

logger = logging.getLogger(__name__)


# This function will run once when the application starts up.
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info("Application starting up...")

    scheduler = init_scheduler() if settings.SCHEDULER_ENABLED else None
    if scheduler is None:
        logger.warning("Scheduler disabled: no payment reconciliation or grace timers")
    init_ticket_runtime(SessionLocal, scheduler=scheduler)

    yield

    logger.info("Application shutting down...")
    shutdown_scheduler()


app = FastAPI(
    title="Ticket Payment Lifecycle Service",
    version="1.0.0",
    description="""
        **Ticket Payment Lifecycle Service**

        Sells event tickets and keeps their payment state consistent across
        user actions, Stripe/PayPal webhooks and active reconciliation.

        ## Authentication

        Ticket endpoints require JWT authentication via the `Authorization: Bearer <token>` header.
        Admin endpoints additionally require the `admin` role.

        ## Webhooks

        `/webhooks/stripe` and `/webhooks/paypal` are called by the payment providers
        and authenticate through provider signatures.
        """,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(TicketError)
async def ticket_error_handler(request: Request, exc: TicketError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


origins = [
    "http://localhost:3000",
    # You would add your production frontend URL here as well
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,  # Allow specific origins
    allow_credentials=True,  # Allow cookies and authorization headers
    allow_methods=["*"],  # Allow all methods (GET, POST, etc.)
    allow_headers=["*"],  # Allow all headers
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
def read_root():
    return {"status": "Ticket Payment Lifecycle Service is running"}
