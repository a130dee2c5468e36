"""FastAPI application."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from qc_gateway.endpoints import ENDPOINTS, router
from qc_gateway.envelope import preflight_response, with_envelope
from qc_gateway.errors import GatewayError
from qc_gateway.schemas import ErrorResponse, HealthResponse, NotFoundResponse
from qc_gateway.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.SERVICE_NAME,
    description="SSRF-safe image retrieval, relay and pixel diff for the QC tracker",
    version=settings.VERSION,
)

# Include API router
app.include_router(router)


# Starlette's CORSMiddleware only decorates responses to requests carrying an
# Origin header, and unhandled errors escape it; this middleware is the single
# exit path instead, so the envelope is on every response including 500s.
@app.middleware("http")
async def response_boundary(request: Request, call_next):
    if request.method == "OPTIONS":
        return preflight_response()
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        response = JSONResponse(
            status_code=500,
            content=ErrorResponse(error="internal_error", message="Internal server error").model_dump(),
        )
    return with_envelope(response)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %d %s: %s", request.method, request.url.path, exc.status_code, exc.error, exc.message)
    else:
        logger.info("%s %s -> %d %s: %s", request.method, request.url.path, exc.status_code, exc.error, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        body = NotFoundResponse(
            pathname=request.url.path,
            availableEndpoints=[endpoint.path for endpoint in ENDPOINTS],
        )
        return JSONResponse(status_code=404, content=body.model_dump())
    body = ErrorResponse(
        error=str(exc.detail).lower().replace(" ", "_"),
        message=f"{request.method} {request.url.path}: {exc.detail}",
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = ErrorResponse(error="invalid_parameter", message=str(exc.errors()))
    return JSONResponse(status_code=400, content=body.model_dump())


@app.get("/", response_model=HealthResponse)
async def root():
    """Root endpoint: service name, deployed version and endpoint listing."""
    return HealthResponse(
        name=settings.SERVICE_NAME,
        version=settings.VERSION,
        status="ok",
        endpoints=ENDPOINTS,
    )
