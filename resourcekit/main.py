from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from resourcekit.api.resources import register_resources
from resourcekit.core.config import settings
from resourcekit.core.http_hardening import install_http_hardening
from resourcekit.services.pagination import EXPOSED_RANGE_HEADERS
from resourcekit.services.resource import registry_for


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[name.strip() for name in EXPOSED_RANGE_HEADERS.split(",")],
    )
    install_http_hardening(app)

    register_resources(app, settings.API_PREFIX)
    registry_for(app).freeze()

    @app.get("/", include_in_schema=False)
    def landing():
        return JSONResponse({"service": settings.APP_NAME, "status": "ok"})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
