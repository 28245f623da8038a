# marketplace/main.py
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketplace.api import api_router
from marketplace.data.database import Base, engine
from marketplace.data import models  # noqa: F401  registers every table on Base.metadata
from marketplace.domain.errors import CommerceError
from marketplace.utils.settings import GATEWAY_KEY_ID, GATEWAY_KEY_SECRET, GATEWAY_WEBHOOK_SECRET
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_BY_KIND = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "external_dependency": 502,
    "invariant_violation": 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Creating tables: {sorted(Base.metadata.tables)}")
    Base.metadata.create_all(bind=engine)

    if not (GATEWAY_KEY_ID and GATEWAY_KEY_SECRET):
        logger.warning("GATEWAY_KEY_ID / GATEWAY_KEY_SECRET not set, online payments will fail")
    if not GATEWAY_WEBHOOK_SECRET:
        logger.warning("GATEWAY_WEBHOOK_SECRET not set, every webhook will be rejected")
    yield


async def commerce_error_handler(request: Request, exc: CommerceError):
    status_code = STATUS_BY_KIND.get(exc.kind, 400)
    logger.info(f"{request.method} {request.url.path} -> {status_code} {exc.kind}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"kind": exc.kind, "detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        f"{'.'.join(str(p) for p in e['loc'][1:]) or e['loc'][0]}: {e['msg']}"
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"kind": "validation", "detail": "; ".join(errors)})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"kind": "internal", "detail": "Internal server error"})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketplace Commerce Service",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(CommerceError, commerce_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(api_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
