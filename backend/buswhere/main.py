import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import BusWhereError
from .routers import auth_management, bus_tracking
from .services.backends import build_services
from .services.fixture_store import FixtureStore
from .services.live_updates import LiveUpdateSimulator
from .services.redis_service import RedisService
from .services.scheduler import Scheduler, ThreadScheduler
from .services.tracking_controller import TrackingController

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, store: Optional[FixtureStore] = None,
               scheduler: Optional[Scheduler] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("buswhere").setLevel(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.redis = RedisService(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            enabled=settings.redis_enabled,
        )
        app.state.simulator = None
        app.state.controller = None
        if settings.backend == "mock":
            fixture_store = store or FixtureStore.seeded()
            app.state.services = build_services(settings, fixture_store)
            if settings.simulator_enabled:
                app.state.simulator = LiveUpdateSimulator(
                    fixture_store,
                    scheduler or ThreadScheduler(),
                    global_period=settings.global_tick_seconds,
                    bus_period=settings.bus_tick_seconds,
                    route_period=settings.route_tick_seconds,
                )
                # Subscribes to the global tick; its snapshot backs /bus-tracking/live-locations.
                app.state.controller = TrackingController(app.state.services["tracking"], app.state.simulator)
                await app.state.controller.refresh_live_locations()
        else:
            app.state.services = build_services(settings)
        logger.info(f"BusWhere+ API started with {settings.backend} backend")
        try:
            yield
        finally:
            if app.state.controller is not None:
                app.state.controller.close()
            if app.state.simulator is not None:
                app.state.simulator.shutdown()
            app.state.redis.close()
            logger.info("BusWhere+ API stopped")

    app = FastAPI(title="BusWhere+ API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "x-client-id", "apikey", "content-type"],
    )

    @app.exception_handler(BusWhereError)
    async def buswhere_error_handler(request: Request, exc: BusWhereError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
        )

    app.include_router(bus_tracking.router)
    app.include_router(auth_management.router)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/")
    async def root():
        return {
            "message": "BusWhere+ API",
            "docs": "/docs",
            "endpoints": [
                "/bus-tracking/search",
                "/bus-tracking/live-locations",
                "/bus-tracking/routes",
                "/bus-tracking/stops",
                "/bus-tracking/route-details",
                "/auth-management/passenger-login",
                "/auth-management/driver-login",
            ],
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
