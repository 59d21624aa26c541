import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gelatin_erp.config import settings
from gelatin_erp.middleware.exceptions import register_exception_handlers
from gelatin_erp.routers import batches, blends, fiscal_years, health, imports

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Gelatin ERP",
    description="Gelatin batch registry, blend composition & blend sheets",
    version="0.1.0",
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(batches.router, prefix="/api/batches", tags=["batches"])
app.include_router(blends.router, prefix="/api/blends", tags=["blends"])
app.include_router(fiscal_years.router, prefix="/api/fiscal-years", tags=["fiscal-years"])
app.include_router(imports.router, prefix="/api/imports", tags=["imports"])
