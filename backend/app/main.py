"""
FastAPI entrypoint for Community Capital backend application.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.exceptions import CommunityCapitalError
from app.api.router import api_router
from app.db.session import SessionLocal
from app.services.notifier import notifier
from app.services.payment_providers import StripePaymentProcessor
from app.services.payment_service import PaymentOrchestrator
from app.services.payment_worker import PaymentWorker
from app.services.settlement_service import SettlementTrigger

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def build_payment_worker(processor=None, session_factory=SessionLocal) -> PaymentWorker:
    """Wire the orchestrator and settlement trigger to a payment processor."""
    processor = processor or StripePaymentProcessor()
    settlement = SettlementTrigger(session_factory, processor, notifier)
    orchestrator = PaymentOrchestrator(
        session_factory,
        processor,
        notifier,
        settlement,
        max_attempts=settings.PAYMENT_MAX_ATTEMPTS,
        backoff_seconds=settings.PAYMENT_BACKOFF_SECONDS,
    )
    return PaymentWorker(orchestrator, threads=settings.PAYMENT_WORKER_THREADS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    notifier.bind_loop(asyncio.get_running_loop())
    worker = app.state.payment_worker
    if settings.PAYMENT_WORKER_ENABLED:
        worker.start()
    yield
    if worker.running:
        worker.stop()
    notifier.bind_loop(None)


app = FastAPI(
    title="Community Capital API",
    description="Backend API for splitting restaurant bills and settling with the merchant",
    version="1.0.0",
    lifespan=lifespan
)
app.state.payment_worker = build_payment_worker()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CommunityCapitalError)
async def domain_error_handler(request: Request, exc: CommunityCapitalError):
    """Map service-layer errors to JSON responses."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Include API routes
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"message": "Community Capital API is running"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
