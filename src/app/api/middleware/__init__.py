"""Request middleware.

Outermost first: metrics (in core.monitoring), request logging, CORS,
then tenant resolution. Tenant resolution must run inside logging so the
bound request_id is present when tenant errors are logged.
"""

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.middleware.tenant import TenantAuthMiddleware

__all__ = ["LoggingMiddleware", "TenantAuthMiddleware", "configure_structlog"]
