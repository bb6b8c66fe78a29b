from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from .database import engine, Base
from .routers import sites, tasks
from .config import get_settings
from .errors import DemoServerError
import asyncio
import logging

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="WordPress Demo Server API")


@app.exception_handler(DemoServerError)
async def demoserver_error_handler(request: Request, exc: DemoServerError):
    logger.error(f"[API] {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = "; ".join(str(err.get("msg", "")) for err in exc.errors())
    return JSONResponse(status_code=422, content={"error": messages or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"[API] {request.method} {request.url.path} crashed: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": str(exc) or type(exc).__name__})


async def sweep_loop():
    """Background task that reclaims expired sites on a fixed schedule."""
    from .services.site_orchestrator import get_site_orchestrator

    logger.info(f"Site reclamation task started (every {settings.sweep_interval_minutes} minutes)")
    error_count = 0
    max_consecutive_errors = 5

    while True:
        await asyncio.sleep(settings.sweep_interval_minutes * 60)
        try:
            report = await get_site_orchestrator().cleanup_expired()
            if report.reclaimed:
                logger.info(f"Reclaimed {len(report.reclaimed)} expired sites")
            error_count = 0

        except Exception as e:
            error_count += 1
            logger.error(f"Sweep error ({error_count}/{max_consecutive_errors}): {e}", exc_info=True)

            # If too many consecutive errors, use exponential backoff
            if error_count >= max_consecutive_errors:
                backoff_time = min(3600, 60 * (2 ** (error_count - max_consecutive_errors)))
                logger.warning(f"Too many sweep errors, backing off for {backoff_time}s")
                await asyncio.sleep(backoff_time)


async def task_cleanup_loop():
    """Forget finished background tasks after a day."""
    from .services.task_manager import get_task_manager

    while True:
        await asyncio.sleep(3600)
        await get_task_manager().cleanup_old_tasks(max_age_hours=24)


async def bootstrap_golden_image_and_pool():
    """Build the golden image if needed, then top up the pool."""
    from .services.site_orchestrator import get_site_orchestrator
    from .services.pool_manager import get_pool_manager

    orchestrator = get_site_orchestrator()
    try:
        build = await orchestrator.golden.start_background_build()
        if build is not None:
            # Wait for the build task without owning it
            while build.is_active:
                await asyncio.sleep(5)
            if not await orchestrator.golden.image_exists():
                logger.error(f"Golden image unavailable after build: {build.error}")
                return
        await get_pool_manager().ensure_minimum()
    except Exception as e:
        logger.error(f"Golden image / pool bootstrap failed: {e}", exc_info=True)


# Create tables
@app.on_event("startup")
async def startup():
    # Retry database connection up to 5 times with exponential backoff
    max_retries = 5
    for attempt in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")
            break
        except Exception as e:
            if attempt < max_retries - 1:
                wait_time = 2 ** attempt  # Exponential backoff: 1, 2, 4, 8 seconds
                logger.warning(f"Database connection attempt {attempt + 1} failed: {type(e).__name__}: {str(e) or 'No error message'}")
                logger.info(f"Retrying in {wait_time} seconds...")
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Failed to connect to database after {max_retries} attempts: {type(e).__name__}: {str(e) or 'No error message'}")
                raise

    # Long-running work never blocks request serving
    asyncio.create_task(bootstrap_golden_image_and_pool())
    asyncio.create_task(sweep_loop())
    asyncio.create_task(task_cleanup_loop())


app.include_router(sites.router)
app.include_router(tasks.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "demoserver"}
