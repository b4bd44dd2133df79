import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from onchain_kyc.api.kyc import router as kyc_router
from onchain_kyc.core.config import settings
from onchain_kyc.core.errors import MalformedPayload
from onchain_kyc.scheduler import start_scheduler, stop_scheduler
from onchain_kyc.utils.redis_pool import close_redis

log = logging.getLogger("onchain_kyc")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    start_scheduler()
    try:
        yield
    finally:
        await stop_scheduler()
        await close_redis()


app = FastAPI(title="Onchain KYC", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Unparseable bodies share the 400 contract of domain validation errors.
    error = MalformedPayload(
        "Request validation failed",
        details=[
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
            for err in exc.errors()
        ],
    )
    log.info(f"Rejected {request.method} {request.url.path}: {error.details}")
    return JSONResponse(status_code=error.status_code, content={"detail": error.to_detail()})


app.include_router(kyc_router)
