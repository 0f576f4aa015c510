import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lesson_ledger.api.v1.attendance.router import router as attendance_router
from lesson_ledger.api.v1.package_usage.router import router as package_usage_router
from lesson_ledger.api.v1.packages.router import router as packages_router
from lesson_ledger.core.config import settings


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Lesson Ledger")

    # CORS: the browser client calls the API and the privileged functions directly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(attendance_router)
    app.include_router(packages_router)
    app.include_router(package_usage_router)

    return app


app = create_app()
