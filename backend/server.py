from token_allowance.routes import token_allowance_router
from token_allowance.errors import AllowanceError, RequestValidationFailed
from token_allowance.db_init import ensure_indexes
from fastapi import FastAPI, APIRouter, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from datetime import datetime, timezone

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="Prompt Library - AI Token Allowance Service")

api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Token allowance: monthly grants, rollover, admin corrections
api_router.include_router(token_allowance_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.exception_handler(AllowanceError)
async def allowance_error_handler(request: Request, exc: AllowanceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"loc": loc, "msg": err.get("msg", "")})

    message = "; ".join(
        f"{'.'.join(e['loc'])}: {e['msg']}" if e["loc"] else e["msg"] for e in errors
    )
    failure = RequestValidationFailed(message or None, details={"errors": errors})
    logger.info(f"{request.method} {request.url.path} rejected: {failure.code} - {failure.message}")
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    from database import check_db_connection, get_database
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Unique (user_id, period_start, period_end) closes the concurrent-ensure race
    await ensure_indexes(get_database())
    logger.info("Token allowance indexes ready")


@app.on_event("shutdown")
async def shutdown_db_client():
    from database import close_client
    close_client()
