from fastapi import FastAPI
import logging
from datetime import datetime
import os
from typing import Optional

from . import __version__
from .api import (
    configure_operations_api,
    configure_webhooks_api,
    operations_router,
    webhooks_router,
)
from .monitoring.metrics import metrics_router
from .runtime import GatewayRuntime


class AddTraceIdFilter(logging.Filter):
    def filter(self, record):
        if not hasattr(record, "trace_id"):
            record.trace_id = "system"
        return True


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - trace_id=%(trace_id)s - %(message)s",
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(AddTraceIdFilter())
logger = logging.getLogger("notification_gateway")


def create_app(runtime: Optional[GatewayRuntime] = None) -> FastAPI:
    runtime = runtime or GatewayRuntime()

    app = FastAPI(
        title="Notification Dispatch Gateway",
        version=__version__,
    )
    app.state.runtime = runtime

    configure_webhooks_api(registry=runtime.webhooks, dispatcher=runtime.webhook_dispatcher)
    configure_operations_api(
        queue=runtime.queue,
        dead_letters=runtime.dead_letters,
        dispatcher=runtime.webhook_dispatcher,
        audit_service=runtime.audit_service,
    )
    app.include_router(metrics_router)
    app.include_router(webhooks_router)
    app.include_router(operations_router)

    @app.get("/health")
    async def health_check():
        details = await runtime.health()
        return {
            **details,
            "timestamp": datetime.utcnow().isoformat(),
            "version": __version__,
        }

    @app.on_event("startup")
    async def startup_event():
        logger.info("Notification gateway starting")
        try:
            await runtime.start()
            logger.info("Gateway services started successfully")
        except Exception as e:
            logger.error(f"Failed to start gateway services: {e}")
            raise

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Notification gateway shutting down")
        try:
            await runtime.stop()
        except Exception as e:
            logger.error(f"Error stopping gateway services: {e}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
