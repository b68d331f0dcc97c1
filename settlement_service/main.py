import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request

from common.error_handling import add_error_handlers
from common.settings import settings
from common.tracing import settlement_tracer, tracing_middleware
from settlement_service.container import Services, build_services
from settlement_service.models import Base
from settlement_service.routers import payments, orders, payouts, bookings, coupons

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

def create_app(services: Services = None, start_worker: bool = True) -> FastAPI:
    engine = None
    if services is None:
        from settlement_service.db import engine
        services = build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            Base.metadata.create_all(bind=engine)
        if start_worker:
            services.outbox.start()
        logger.info("Settlement service started")
        yield
        if start_worker:
            services.outbox.stop()
        logger.info("Settlement service stopped")

    app = FastAPI(title="Settlement Service", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, settlement_tracer)

    add_error_handlers(app)

    app.include_router(payments.router, prefix="/payments", tags=["Payments"])
    app.include_router(orders.router, tags=["Orders"])
    app.include_router(payouts.router, tags=["Payouts"])
    app.include_router(bookings.router, tags=["Bookings"])
    app.include_router(coupons.router, tags=["Coupons"])

    @app.get("/health")
    def health():
        breaker = getattr(services.gateway, "breaker", None)
        return {
            "status": "ok",
            "gateway_circuit": breaker.get_state()["state"] if breaker else None,
        }

    return app

app = create_app()
