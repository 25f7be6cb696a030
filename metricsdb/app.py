"""FastAPI application serving read-only window queries.

There is no module-level app: windows live in the memory of the process that
writes them, so that process builds the API with `create_app(manager)` and
hands it to its ASGI server.
"""

from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from metricsdb.lib.config import get_settings
from metricsdb.lib.errors import (
  InvalidArgumentError,
  MetricsDBError,
  StoreIOError,
  UnknownAggregationError,
  WindowNotFoundError,
  WindowOpenError,
)
from metricsdb.lib.structured_logger import StructuredLogger, configure_logging
from metricsdb.routers import router
from metricsdb.services.window_manager import WindowManager

logger = StructuredLogger(__name__)

# Status code per error type; the first matching base class wins
ERROR_STATUS = (
  (WindowNotFoundError, 404),
  (WindowOpenError, 409),
  (InvalidArgumentError, 400),
  (UnknownAggregationError, 400),
  (StoreIOError, 503),
)


def error_status(exc: MetricsDBError) -> int:
  for error_type, status_code in ERROR_STATUS:
    if isinstance(exc, error_type):
      return status_code
  return 500


def create_app(manager: WindowManager | None = None) -> FastAPI:
  """Build the API around a window manager.

  Args:
      manager: Manager whose windows are served; one is created from the
          environment on startup when omitted

  Returns:
      The FastAPI application
  """

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    owned = getattr(app.state, 'window_manager', None) is None
    if owned:
      load_dotenv()
      settings = get_settings()
      configure_logging(settings.log_level)
      app.state.window_manager = WindowManager(settings)
    yield
    if owned:
      app.state.window_manager.shutdown()
      app.state.window_manager = None

  app = FastAPI(
    title='MetricsDB API',
    description='Read-only queries over time-windowed metric stores',
    version='0.1.0',
    lifespan=lifespan,
  )
  app.state.window_manager = manager

  @app.get('/health')
  async def health():
    """Health check endpoint (for load balancers)."""
    return {'status': 'healthy'}

  @app.get('/metrics')
  async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

  @app.exception_handler(MetricsDBError)
  async def metricsdb_exception_handler(request: Request, exc: MetricsDBError):
    """Map store errors to HTTP status codes with a structured body."""
    status_code = error_status(exc)
    if status_code >= 500:
      logger.error(f'{request.method} {request.url.path} failed: {exc}')
    return JSONResponse(
      status_code=status_code,
      content={'detail': str(exc), 'error_type': type(exc).__name__},
    )

  app.include_router(router, prefix='/api')
  return app
