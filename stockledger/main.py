from contextlib import asynccontextmanager
from fastapi import FastAPI
from stockledger.api import cur_version
from stockledger.api.routers import public_routers
from stockledger.common.custom_exceptions import register_all_exceptions
from stockledger.common.logging_setup import setup_logging, stop_logging
from stockledger.config.admin_config import admin_config
from stockledger.db.connection import async_engine
from stockledger.middlewares.gateway_identity_middleware import GatewayIdentityMiddleware
from stockledger.middlewares.request_id_middleware import RequestIdMiddleware
from metrics.custom_instrumentator import instrumentator


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()
    try:
        yield
    finally:
        await async_engine.dispose()
        stop_logging()


def create_app():
    app=FastAPI(
        title="Stockledger",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    if admin_config.TRUST_GATEWAY_HEADERS:
        app.add_middleware(GatewayIdentityMiddleware)
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    if admin_config.ENABLE_METRICS:
        instrumentator.instrument(app).expose(app, endpoint="/metrics")

    return app

app=create_app()
