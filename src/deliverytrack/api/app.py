"""
FastAPI application wiring.

This file creates the `FastAPI` instance and its lifespan; endpoints live in
`deliverytrack.api.routes`.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from deliverytrack.core.logging import configure_logging

from . import routes

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = routes._services()
    try:
        yield
    finally:
        await services.shutdown()


app = FastAPI(title="DeliveryTrack API", version="0.1.0", lifespan=lifespan)

# CORS (dev-friendly): allow local dashboards to call this API.
# Configure via env:
# - DELIVERYTRACK_CORS_ORIGINS="http://localhost:8080,http://127.0.0.1:8080"
# - DELIVERYTRACK_CORS_ALLOW_LOCAL=0 to disable the default localhost allowance
cors_origins = [s.strip() for s in os.getenv("DELIVERYTRACK_CORS_ORIGINS", "").split(",") if s.strip()]
cors_allow_local = os.getenv("DELIVERYTRACK_CORS_ALLOW_LOCAL", "1").strip().lower() in {"1", "true", "yes", "y"}
cors_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$" if cors_allow_local and not cors_origins else ""
if cors_origins or cors_origin_regex:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=cors_origin_regex or None,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(routes.router)
