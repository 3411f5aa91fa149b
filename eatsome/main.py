# eatsome/main.py
import os
from dataclasses import dataclass
from typing import List, Optional

import structlog
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import AuthError, current_user_id, issue_token, validate_init_data
from .bot import BotHandler, new_user
from .config import Settings
from .database import create_db_engine, init_db
from .errors import NotFound, PersistenceError, RecognitionError, ValidationError
from .logging_config import configure_logging
from .media import ALLOWED_UPLOAD_EXTENSIONS, MediaStore, upload_key
from .models import PostRead, Tag, User
from .notifications import TelegramNotifier
from .pipeline import EnrichmentPipeline, PipelineRunner
from .recognition import RecognitionClient
from .storage import Storage
from .tasks import TaskSupervisor

logger = structlog.get_logger()

WEBHOOK_PATH = "/wh/telegram"


@dataclass
class Services:
    settings: Settings
    storage: Storage
    runner: PipelineRunner
    supervisor: TaskSupervisor
    recognizer: Optional[RecognitionClient] = None
    media: Optional[MediaStore] = None
    bot: Optional[Bot] = None
    bot_handler: Optional[BotHandler] = None


def build_services(settings: Settings) -> Services:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    storage = Storage(engine)

    bot = None
    notifier = None
    if settings.telegram_bot_token:
        bot = Bot(token=settings.telegram_bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
        notifier = TelegramNotifier(bot, storage)
    else:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set, bot disabled")

    media = MediaStore.from_settings(settings) if settings.aws_bucket else None
    recognizer = RecognitionClient.from_settings(settings)
    supervisor = TaskSupervisor()
    runner = PipelineRunner(EnrichmentPipeline(storage, recognizer, notifier), supervisor)

    bot_handler = None
    if bot and media:
        bot_handler = BotHandler(bot, storage, media, notifier, runner, settings)

    return Services(
        settings=settings,
        storage=storage,
        runner=runner,
        supervisor=supervisor,
        recognizer=recognizer,
        media=media,
        bot=bot,
        bot_handler=bot_handler,
    )


app = FastAPI()


def get_services(request: Request) -> Services:
    return request.app.state.services


@app.on_event("startup")
async def on_startup():
    if getattr(app.state, "services", None) is not None:
        return

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)
    services = build_services(settings)
    services.storage.seed_tags()
    app.state.services = services

    if services.bot and settings.external_url:
        url = settings.external_url.rstrip("/") + WEBHOOK_PATH
        await services.bot.set_webhook(url=url, secret_token=settings.telegram_webhook_secret)
        logger.info("🔗 Webhook set", url=url)
    logger.info("🚀 Service started")


@app.on_event("shutdown")
async def on_shutdown():
    services = getattr(app.state, "services", None)
    if services is None:
        return
    await services.supervisor.shutdown()
    if services.recognizer:
        await services.recognizer.aclose()
    if services.bot:
        await services.bot.session.close()


# --- Error mapping ---

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RecognitionError)
async def recognition_error_handler(request: Request, exc: RecognitionError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error("❌ Database error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Database error"})


# --- Request bodies ---

class PostCreate(BaseModel):
    photo_url: str
    text: Optional[str] = None


class PostUpdate(BaseModel):
    photo_url: str
    text: Optional[str] = None
    tag_ids: Optional[List[int]] = None


class PresignRequest(BaseModel):
    filename: str


class UserSettingsUpdate(BaseModel):
    language: Optional[str] = None
    notifications_enabled: Optional[bool] = None
    title: Optional[str] = None
    age: Optional[int] = None
    weight: Optional[float] = None
    height: Optional[int] = None
    fat_percentage: Optional[float] = None
    goal: Optional[str] = None
    gender: Optional[str] = None


# --- Routes ---

@app.get("/health")
def health():
    return {"status": "ok"}


@app.post(WEBHOOK_PATH)
async def telegram_webhook(request: Request, services: Services = Depends(get_services)):
    secret = services.settings.telegram_webhook_secret
    if secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        logger.warning("🔒 Webhook unauthorized")
        raise HTTPException(status_code=403, detail="forbidden")
    if services.bot_handler is None:
        raise HTTPException(status_code=503, detail="Bot not configured")

    await services.bot_handler.handle_update(await request.json())
    return {"ok": True}


@app.post("/auth/telegram")
def auth_telegram(request: Request, services: Services = Depends(get_services)):
    """Exchange the mini app's raw initData (the query string) for a JWT."""
    settings = services.settings
    if not settings.telegram_bot_token:
        raise HTTPException(status_code=500, detail="Bot token not configured")
    try:
        tg_user = validate_init_data(request.url.query, settings.telegram_bot_token)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    try:
        user = services.storage.get_user_by_chat_id(tg_user.id)
    except NotFound:
        user = services.storage.create_user(
            new_user(
                chat_id=tg_user.id,
                username=tg_user.username,
                first_name=tg_user.first_name,
                last_name=tg_user.last_name,
                language_code=tg_user.language_code,
                is_premium=tg_user.is_premium,
            )
        )
        logger.info("👋 User created from web app", user_id=user.id)

    token = issue_token(user.id, user.chat_id, settings.jwt_secret, settings.jwt_ttl_hours)
    return {"token": token, "user": user}


@app.get("/api/posts", response_model=List[PostRead])
def feed_endpoint(uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.storage.list_feed(viewer_id=uid)


@app.get("/api/posts/mine", response_model=List[PostRead])
def my_posts_endpoint(uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.storage.list_user_posts(uid)


@app.get("/api/posts/{post_id}", response_model=PostRead)
def get_post_endpoint(post_id: int, uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.storage.get_post(post_id, viewer_id=uid)


@app.post("/api/posts", response_model=PostRead, status_code=201)
async def create_post_endpoint(
    body: PostCreate,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    user = services.storage.get_user(uid)
    post = services.storage.create_post(uid, body.photo_url, text=body.text, hidden=False)
    services.runner.submit(post.id, uid, user.language)
    return post


@app.put("/api/posts/{post_id}", response_model=PostRead)
def update_post_endpoint(
    post_id: int,
    body: PostUpdate,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    return services.storage.update_post(uid, post_id, body.text, body.photo_url, body.tag_ids)


@app.post("/api/posts/{post_id}/ai", response_model=PostRead)
async def rerun_enrichment_endpoint(
    post_id: int,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    user = services.storage.get_user(uid)
    post = await services.runner.submit(post_id, uid, user.language, force=True)
    return post or services.storage.get_post(post_id, viewer_id=uid)


@app.post("/api/posts/{post_id}/react/{reaction}", status_code=204)
def react_endpoint(
    post_id: int,
    reaction: str,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    services.storage.react_to_post(uid, post_id, reaction)


@app.delete("/api/posts/{post_id}/react", status_code=204)
def drop_reaction_endpoint(post_id: int, uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    services.storage.drop_reaction(uid, post_id)


@app.get("/api/tags", response_model=List[Tag])
def tags_endpoint(
    language: Optional[str] = None,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    return services.storage.list_tags(language)


@app.post("/api/presigned-url")
def presigned_url_endpoint(
    body: PresignRequest,
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    if services.media is None:
        raise HTTPException(status_code=503, detail="Media storage not configured")

    extension = os.path.splitext(body.filename)[1].lower()
    if extension not in ALLOWED_UPLOAD_EXTENSIONS:
        raise ValidationError(f"unsupported file extension: {extension or body.filename}")

    key = upload_key(uid, extension)
    return {
        "url": services.media.presigned_upload_url(key, services.settings.presign_ttl_seconds),
        "key": key,
        "public_url": services.media.public_url(key),
    }


@app.get("/api/users/me", response_model=User)
def me_endpoint(uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    return services.storage.get_user(uid)


@app.put("/api/users/me", response_model=User)
def update_me_endpoint(
    body: UserSettingsUpdate = Body(...),
    uid: int = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    return services.storage.update_user(uid, body.model_dump(exclude_unset=True))


@app.post("/api/users/me/join", status_code=204)
def join_endpoint(uid: int = Depends(current_user_id), services: Services = Depends(get_services)):
    services.storage.request_to_join(uid)
