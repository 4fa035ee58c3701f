"""
MIT License — OOTD Try-On (FastAPI)
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from tryon_backend.providers.ootdiffusion import OOTDiffusionClient
from tryon_backend.service import TryOnService
from tryon_backend.settings import Settings
from tryon_backend.throttle import (
    InMemoryUsageStore,
    JsonFileUsageStore,
    UsageThrottle,
    format_reset_in,
)
from tryon_backend.types import TryOnFailure, TryOnOutcome, TryOnResult, UsageStatus

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CALLER_HEADER = "X-Caller-Id"


def caller_id_for(request: Request) -> str:
    """Browser-held id when the page sends one, else the client address."""
    caller = request.headers.get(CALLER_HEADER, "").strip()
    return caller or get_remote_address(request)


def build_service(settings: Settings) -> TryOnService:
    client = OOTDiffusionClient(
        space_url=settings.SPACE_URL,
        api_prefix=settings.SPACE_API_PREFIX,
        hf_token=settings.HF_TOKEN,
        timeout_s=settings.REMOTE_TIMEOUT_S,
    )
    if settings.USAGE_STORE_PATH:
        store = JsonFileUsageStore(settings.USAGE_STORE_PATH)
    else:
        store = InMemoryUsageStore()
    throttle = UsageThrottle(
        store,
        default_tries=settings.DAILY_TRIES,
        window=timedelta(hours=settings.USAGE_WINDOW_HOURS),
    )
    return TryOnService(
        client,
        throttle,
        timeout_s=settings.REQUEST_TIMEOUT_S,
        max_upload_bytes=settings.MAX_UPLOAD_MB * 1024 * 1024,
        max_image_side=settings.MAX_IMAGE_SIDE,
        expose_details=not settings.is_production,
    )


def _render(outcome: TryOnOutcome) -> JSONResponse:
    if outcome.success:
        body = TryOnResult(result=outcome.result, triesRemaining=outcome.tries_remaining)
        return JSONResponse(body.model_dump(exclude_none=True))

    body = TryOnFailure(
        error=outcome.error or "Failed to process model response",
        code=outcome.code or "internal_error",
        retryAfter=outcome.retry_after_s,
        details=outcome.details,
    )
    headers = {}
    if outcome.retry_after_s is not None:
        headers["Retry-After"] = str(outcome.retry_after_s)
    return JSONResponse(
        body.model_dump(exclude_none=True),
        status_code=outcome.status_code,
        headers=headers,
    )


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[TryOnService] = None,
) -> FastAPI:
    settings = settings or Settings()
    service = service or build_service(settings)

    app = FastAPI(title="OOTD Try-On (FastAPI)")
    app.state.settings = settings
    app.state.service = service

    # Add CORS middleware FIRST to handle preflight requests properly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    if settings.FORCE_HTTPS:
        app.add_middleware(HTTPSRedirectMiddleware)

    limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.on_event("startup")
    async def _startup():
        logger.info(f"HF_TOKEN configured: {bool(settings.HF_TOKEN)}")
        logger.info(f"Space: {settings.SPACE_URL}")
        logger.info(f"Allowed origins: {settings.origins}")

    @app.on_event("shutdown")
    async def _shutdown():
        aclose = getattr(service.client, "aclose", None)
        if aclose is not None:
            await aclose()

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "hf_token_configured": bool(settings.HF_TOKEN),
            "space_url": settings.SPACE_URL,
            "allowed_origins": settings.origins,
        }

    @app.get("/token-check")
    async def token_check():
        whoami = getattr(service.client, "whoami", None)
        if whoami is None:
            return {"ok": False, "error": "client cannot verify tokens"}
        try:
            return await whoami()
        except Exception as e:
            logger.error(f"Token check failed: {e}")
            return JSONResponse({"ok": False, "error": str(e)}, status_code=502)

    @app.get("/api/usage", response_model=UsageStatus)
    def usage(request: Request) -> UsageStatus:
        decision = service.throttle.status(caller_id_for(request))
        return UsageStatus(
            triesLeft=decision.tries_remaining,
            timeUntilReset=format_reset_in(decision.reset_in),
            resetInSeconds=max(0, int(decision.reset_in.total_seconds())),
        )

    @app.post("/api/generate-outfit")
    @limiter.limit(settings.RATE_LIMIT)
    async def generate_outfit(
        request: Request,
        modelImage: Optional[UploadFile] = File(None),
        garmentImage: Optional[UploadFile] = File(None),
        category: Optional[str] = Form(None),
        nSamples: Optional[str] = Form(None),
        nSteps: Optional[str] = Form(None),
        imageScale: Optional[str] = Form(None),
        seed: Optional[str] = Form(None),
    ):
        caller = caller_id_for(request)
        logger.info(f"Try-on request from {caller}")

        outcome = await service.submit(
            caller,
            model_image=await modelImage.read() if modelImage else None,
            garment_image=await garmentImage.read() if garmentImage else None,
            category=category,
            n_samples=nSamples,
            n_steps=nSteps,
            image_scale=imageScale,
            seed=seed,
        )
        return _render(outcome)

    # Root page (optional tiny check)
    @app.get("/")
    def root():
        return HTMLResponse(
            "<h1>OOTD Try-On (FastAPI)</h1><p>POST images to <code>/api/generate-outfit</code>.</p>"
        )

    return app


app = create_app()
