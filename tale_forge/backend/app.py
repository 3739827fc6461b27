# tale_forge/backend/app.py
import logging
from dataclasses import asdict
from typing import Annotated, Any, Dict, List, Optional, Sequence

from fastapi import Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from tale_forge.backend.adapters.core_adapter import (
    ChatProvider,
    ImageGenerator,
    ProviderOrchestrator,
    build_text_providers,
)
from tale_forge.backend.pipeline import GenerationPipeline
from tale_forge.backend.schemas import (
    CheckoutReq,
    EstimateReq,
    GrantReq,
    ImageReq,
    PortalReq,
    SegmentReq,
    SegmentResp,
    StoryUpdateReq,
)
from tale_forge.backend.services.billing import BillingService
from tale_forge.backend.services.identity import Identity, LocalIdentity, SupabaseIdentity
from tale_forge.backend.services.media import MediaService
from tale_forge.backend.storage.files import MediaStorage
from tale_forge.backend.storage.memory import InMemoryStore
from tale_forge.backend.storage.store import StoryStore
from tale_forge.backend.storage.supabase_db import SupabaseStore
from tale_forge.common.config import Settings
from tale_forge.common.credits import (
    StorySpecs,
    calculate_audio_cost,
    calculate_story_credits,
    estimate_reading_time,
    get_premade_template_costs,
    validate_story_specs,
)
from tale_forge.common.errors import (
    NotFoundError,
    TaleForgeError,
    UnauthorizedError,
    ValidationError,
    classify_error,
)
from tale_forge.common.models import AuthUser, StorySegment, UserCredits
from tale_forge.common.utils import generate_age_group_label, kid_safe_text

logger = logging.getLogger(__name__)

DEV_TOKEN = "dev-token"


def _segment_out(segment: StorySegment) -> Dict[str, Any]:
    return {
        "id": segment.id,
        "position": segment.position,
        "content": segment.content,
        "choices": [c.text for c in segment.choices],
        "image_url": segment.image_url,
        "audio_url": segment.audio_url,
        "is_end": segment.is_end,
    }


def _bearer_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    parts = auth.split()
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
        return parts[1].strip()
    raise UnauthorizedError("Unauthorized")


async def current_user(request: Request) -> AuthUser:
    identity: Identity = request.app.state.identity
    return await identity.validate(_bearer_token(request))


def _error_response(exc: BaseException, dev: bool) -> JSONResponse:
    info = classify_error(exc, dev=dev)
    if info.http_status >= 500:
        logger.error("%s: %s", info.code, exc, exc_info=info.code == "INTERNAL_ERROR")
    return JSONResponse(status_code=info.http_status, content=info.body())


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[StoryStore] = None,
    identity: Optional[Identity] = None,
    text_providers: Optional[Sequence[ChatProvider]] = None,
    image_generator: Optional[ImageGenerator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if store is None:
        store = InMemoryStore() if settings.use_local_db else SupabaseStore(settings)
    if identity is None:
        if isinstance(store, InMemoryStore):
            identity = LocalIdentity(store)
        else:
            identity = SupabaseIdentity(settings)
    if isinstance(store, InMemoryStore) and settings.dev_mode:
        store.register_user(DEV_TOKEN, "dev-user", email="dev@localhost", balance=20, audio_enabled=True)
        logger.info("Local mode: use 'Authorization: Bearer %s' (20 credits)", DEV_TOKEN)

    providers = list(text_providers) if text_providers is not None else build_text_providers(settings)
    if not providers:
        logger.warning("No AI text provider configured; story generation will fail")
    if image_generator is None and settings.openai_api_key:
        image_generator = ImageGenerator(
            api_key=settings.openai_api_key,
            model=settings.image_model,
            fallback_models=settings.image_fallback_models,
        )
    media_storage = MediaStorage(settings)

    app = FastAPI(title="Tale Forge API", version="1.0.0")
    app.state.settings = settings
    app.state.store = store
    app.state.identity = identity
    app.state.pipeline = GenerationPipeline(
        store, ProviderOrchestrator(providers, temperature=settings.ai_temperature)
    )
    app.state.media = MediaService(settings, store, media_storage, image_generator)
    app.state.billing = BillingService(settings, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Static files for generated media
    media_storage.ensure_media_dir()
    if not settings.use_supabase_storage and settings.media_dir.exists():
        app.mount("/media", StaticFiles(directory=str(settings.media_dir)), name="media")

    # -------------------------------
    # Errors
    # -------------------------------
    @app.exception_handler(TaleForgeError)
    async def _app_error(request: Request, exc: TaleForgeError):
        return _error_response(exc, settings.dev_mode)

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg", "")}
            for e in exc.errors()
        ]
        return _error_response(
            ValidationError("Invalid request", details={"errors": errors}), settings.dev_mode
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return _error_response(exc, settings.dev_mode)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        return _error_response(exc, settings.dev_mode)

    # -------------------------------
    # Routes
    # -------------------------------
    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/story/segment", response_model=SegmentResp)
    async def create_segment(
        req: Annotated[SegmentReq, Body(discriminator="mode")],
        user: AuthUser = Depends(current_user),
    ):
        result = await app.state.pipeline.run(user, req)
        return {
            "success": True,
            "story_id": result.story_id,
            "segment": _segment_out(result.segment),
            "cost": result.cost,
            "balance": result.balance,
        }

    @app.get("/stories")
    async def list_stories(user: AuthUser = Depends(current_user)):
        stories = await app.state.store.list_stories(user.id)
        out: List[Dict[str, Any]] = []
        for s in stories:
            row = s.to_dict(with_segments=False)
            row["age_label"] = generate_age_group_label(s.target_age)
            out.append(row)
        return {"stories": out}

    @app.get("/story/{story_id}")
    async def get_story(story_id: str, user: AuthUser = Depends(current_user)):
        story = await app.state.store.get_story(user.id, story_id)
        if story is None:
            raise NotFoundError("Story not found")
        data = story.to_dict()
        data["age_label"] = generate_age_group_label(story.target_age)
        return data

    @app.patch("/story/{story_id}")
    async def update_story(
        story_id: str, req: StoryUpdateReq, user: AuthUser = Depends(current_user)
    ):
        changes = req.changes()
        if not changes:
            raise ValidationError("Nothing to update")
        ok, err = kid_safe_text(changes.get("title", ""), changes.get("description", ""))
        if not ok:
            raise ValidationError(err)
        story = await app.state.store.update_story(user.id, story_id, changes)
        data = story.to_dict(with_segments=False)
        data["age_label"] = generate_age_group_label(story.target_age)
        return data

    @app.post("/story/{story_id}/ending", response_model=SegmentResp)
    async def end_story(story_id: str, user: AuthUser = Depends(current_user)):
        result = await app.state.pipeline.end_story(user, story_id)
        return {
            "success": True,
            "story_id": result.story_id,
            "segment": _segment_out(result.segment),
            "cost": result.cost,
            "balance": result.balance,
        }

    @app.delete("/story/{story_id}")
    async def delete_story(story_id: str, user: AuthUser = Depends(current_user)):
        if not await app.state.store.delete_story(user.id, story_id):
            raise NotFoundError("Story not found")
        return {"ok": True}

    @app.post("/story/{story_id}/segments/{position}/image")
    async def illustrate_segment(
        story_id: str,
        position: int,
        req: Optional[ImageReq] = Body(default=None),
        user: AuthUser = Depends(current_user),
    ):
        req = req or ImageReq()
        persisted = await app.state.media.illustrate(
            user, story_id, position, style=req.style, size=req.size
        )
        return {"success": True, "story_id": story_id, "segment": _segment_out(persisted.segment)}

    @app.post("/story/{story_id}/segments/{position}/audio")
    async def narrate_segment(story_id: str, position: int, user: AuthUser = Depends(current_user)):
        persisted = await app.state.media.narrate(user, story_id, position)
        return {
            "success": True,
            "story_id": story_id,
            "segment": _segment_out(persisted.segment),
            "cost": -persisted.transaction.amount if persisted.transaction else 0,
            "balance": persisted.balance,
        }

    @app.post("/credits/estimate")
    def estimate_credits(req: EstimateReq):
        specs = StorySpecs(chapters=req.chapters, words_per_chapter=req.words_per_chapter)
        check = validate_story_specs(specs)
        calc = calculate_story_credits(specs)
        audio = calculate_audio_cost(specs)
        total = calc.total + (audio.cost if req.include_audio else 0)
        return {
            "valid": check.valid,
            "errors": check.errors,
            "total": total,
            "story_credits": calc.total,
            "breakdown": calc.breakdown,
            "audio": asdict(audio),
            "reading_time": estimate_reading_time(specs),
        }

    @app.get("/credits")
    async def get_credits(user: AuthUser = Depends(current_user)):
        credits = await app.state.store.get_credits(user.id)
        return asdict(credits or UserCredits(user_id=user.id))

    @app.get("/credits/transactions")
    async def list_transactions(limit: int = 50, user: AuthUser = Depends(current_user)):
        limit = max(1, min(limit, 200))
        rows = await app.state.store.list_transactions(user.id, limit=limit)
        return {"transactions": [asdict(t) for t in rows]}

    @app.post("/credits/grant")
    async def grant_credits(req: GrantReq, user: AuthUser = Depends(current_user)):
        caller = await app.state.store.get_credits(user.id)
        if not (caller and caller.is_admin):
            raise UnauthorizedError("Admin access required")
        credits = await app.state.store.grant_credits(
            req.user_id, req.amount, description=req.description, reference_id=user.id
        )
        logger.info("Admin %s granted %s credits to %s", user.id, req.amount, req.user_id)
        return asdict(credits)

    @app.get("/templates/costs")
    def template_costs():
        return {"costs": get_premade_template_costs()}

    @app.post("/billing/checkout-session")
    async def checkout_session(req: CheckoutReq, user: AuthUser = Depends(current_user)):
        data = await app.state.billing.checkout_session(
            user, req.price_key, success_url=req.success_url, cancel_url=req.cancel_url
        )
        return {"success": True, **data}

    @app.post("/billing/portal-session")
    async def portal_session(req: PortalReq, user: AuthUser = Depends(current_user)):
        data = await app.state.billing.portal_session(user, return_url=req.return_url)
        return {"success": True, **data}

    return app
