from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from core.config import get_settings
from core.errors import ConflictError, CoreError, NotFoundError, ValidationError
from core.logging import configure_logging
from ledger.api import router as ledger_router
from rules.api import router as rules_router

from .services import Services, build_services, seed_demo_data


def error_status(exc: CoreError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)
        if settings.seed_demo_data:
            seed_demo_data(services)

    app = FastAPI(
        title="Referral Ledger API",
        description="Financial ledger for referral rewards with a versioned rule engine",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
        return JSONResponse(
            status_code=error_status(exc),
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-ledger"}

    app.include_router(ledger_router)
    app.include_router(rules_router)
    return app


app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
