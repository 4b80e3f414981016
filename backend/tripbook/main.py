from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from tripbook.container import Container
from tripbook.routers import auth, bookings, notifications, profiles, reviews


def create_app(container: Optional[Container] = None) -> FastAPI:
    container = container or Container.build()
    app = FastAPI(title="Tripbook API", version="0.1.0")
    app.state.container = container

    cors_origins = list(container.settings.cors_origins)
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = list(container.settings.trusted_hosts)
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(auth.router)
    app.include_router(notifications.router)
    app.include_router(profiles.router)
    app.include_router(bookings.router)
    app.include_router(reviews.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "verticals": sorted(container.policies)}

    return app


app = create_app()
