import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from prescription_cqrs.core.db import init_db, close_db
from prescription_cqrs.core.broker import build_event_publisher, connect_broker
from prescription_cqrs.api.v1.prescriptions import router as prescriptions_router, reference_router
from prescription_cqrs.api.v1.views import pharmacy_router, chart_router
from prescription_cqrs.core.config import PROJECT_NAME, VERSION, EVENT_STRATEGY, PropagationStrategy
from prescription_cqrs.core.exception_handlers import setup_exception_handlers
from prescription_cqrs.events.sources import DirectPublisher

log = logging.getLogger("uvicorn")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION} (event strategy: {EVENT_STRATEGY.value})...")
    await init_db() # Connect to DB and generate schemas

    redis = None
    if EVENT_STRATEGY == PropagationStrategy.DIRECT:
        # Only the direct strategy publishes from the request path
        redis = await connect_broker()
        app.state.publisher = DirectPublisher(build_event_publisher(redis))
    try:
        yield
    finally:
        if redis is not None:
            await redis.aclose()
        await close_db()
        log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Command side
app.include_router(prescriptions_router, prefix="/api/v1/prescriptions", tags=["Prescriptions"])
app.include_router(reference_router, prefix="/api/v1", tags=["Reference Data"])
# Query side, read models only
app.include_router(pharmacy_router, prefix="/api/v1/pharmacy", tags=["Pharmacy View"])
app.include_router(chart_router, prefix="/api/v1/chart", tags=["Patient Chart View"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME, "event_strategy": EVENT_STRATEGY.value}


def run():
    import uvicorn
    uvicorn.run("prescription_cqrs.main:app", host="0.0.0.0", port=8000)
