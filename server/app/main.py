# server/app/main.py

import  asyncio
from    typing                      import Optional
from    fastapi                     import FastAPI, Request
from    fastapi.responses           import JSONResponse
from    .routes                     import router
from    .services                   import Services, build_services
from    config                      import constants
from    config.settings             import Settings
from    utils.errors                import (DeviceNotFound, DeviceOffline, PublishError, RuleNotFound,
                                            UpstreamFetchError, ValidationError)
from    utils.logger                import getLogger

logger  = getLogger("EnergyServer")

ERROR_STATUS = {
    DeviceNotFound:         404,
    RuleNotFound:           404,
    DeviceOffline:          409,
    ValidationError:        400,
    PublishError:           502,
    UpstreamFetchError:     502,
}


def create_app(services: Optional[Services] = None, start_background: bool = True) -> FastAPI:
    app = FastAPI(title=constants.SERVER_TITLE, version=constants.SERVER_VERSION)
    app.include_router(router)
    app.state.services = services
    app.state.stop_event = None
    app.state.scheduler_task = None

    for error_type, status_code in ERROR_STATUS.items():
        app.add_exception_handler(error_type, _error_handler(status_code))

    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            app.state.services = build_services(Settings.from_env())                 # Start the database.
        if not start_background:
            return
        services = app.state.services
        start = getattr(services.transport, "start", None)
        if start:
            start()                                                                 # Start the MQTT client
        app.state.stop_event = asyncio.Event()
        app.state.scheduler_task = asyncio.create_task(
            services.scheduler.run(services.settings.automation_tick_seconds, app.state.stop_event)
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.stop_event is not None:
            app.state.stop_event.set()
            await app.state.scheduler_task
        services = app.state.services
        stop = getattr(services.transport, "stop", None) if services else None
        if start_background and stop:
            stop()                                                                  # Stop the MQTT client gracefully on shutdown.

    return app


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        logger.warning(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        body = {"message": str(exc)}
        if isinstance(exc, UpstreamFetchError):
            body = {"message": f"Failed to fetch {exc.source}", "error": exc.reason}
        return JSONResponse(status_code=status_code, content=body)
    return handler


app = create_app()
