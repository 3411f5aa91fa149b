# eatsome/pipeline.py
"""
Background AI enrichment of freshly created posts.

A post moves pending → processing → (spam | enriched | failed). The run
recognizes the photo, stops on spam, otherwise estimates nutrition and
stores the whole result with a single write. The outcome is delivered by
editing the chat message the user got when the photo was uploaded.
"""
import asyncio
from typing import Iterable, Optional

import structlog
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from .errors import EatsomeError
from .locales import format_ingredients, insights_text, message, resolve_locale
from .models import Enrichment, FoodInsights, Ingredient, PostRead
from .notifications import TelegramNotifier
from .recognition import RecognitionClient
from .storage import Storage
from .tasks import TaskSupervisor

logger = structlog.get_logger()


def aggregate_insights(ingredients: Iterable[Ingredient]) -> FoodInsights:
    """Sum per-ingredient estimates and truncate the totals to whole units."""
    ingredients = list(ingredients)
    return FoodInsights(
        calories=int(sum(i.calories for i in ingredients)),
        proteins=int(sum(i.macronutrients.proteins for i in ingredients)),
        fats=int(sum(i.macronutrients.fats for i in ingredients)),
        carbohydrates=int(sum(i.macronutrients.carbohydrates for i in ingredients)),
    )


def share_keyboard(locale: str, post_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[[
            InlineKeyboardButton(
                text=message(locale, "shareWithCommunity"), callback_data=f"share_{post_id}"
            )
        ]]
    )


class EnrichmentPipeline:
    def __init__(
        self,
        storage: Storage,
        recognizer: RecognitionClient,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.storage = storage
        self.recognizer = recognizer
        self.notifier = notifier

    async def run(
        self, post_id: int, user_id: int, locale: Optional[str] = None, force: bool = False
    ) -> Optional[PostRead]:
        """
        Enrich one post.

        Returns the post in its terminal state, or None when the post was
        already enriched (or is being enriched) and `force` is not set.
        Errors are re-raised after the post is marked failed and the user
        is told to retry. A cancelled run is marked failed as well so it
        can be picked up again.
        """
        lang = resolve_locale(locale)
        log = logger.bind(post_id=post_id, user_id=user_id, locale=lang)

        if not self.storage.claim_post_for_enrichment(user_id, post_id, force=force):
            log.info("⏭️ Enrichment skipped, post already processed")
            return None

        try:
            return await self._enrich(post_id, user_id, lang, log)
        except asyncio.CancelledError:
            log.warning("🛑 Enrichment cancelled")
            self._mark_failed(post_id, user_id, log)
            raise
        except Exception as e:
            log.error("❌ Enrichment failed", error=str(e), error_type=type(e).__name__)
            self._mark_failed(post_id, user_id, log)
            await self._notify(user_id, post_id, message(lang, "enrichmentFailed"), log)
            raise

    async def _enrich(self, post_id: int, user_id: int, lang: str, log) -> PostRead:
        post = self.storage.get_post(post_id)

        log.info("🔎 Recognizing photo", photo_url=post.photo_url)
        recognition = await self.recognizer.analyze_image(lang, post.photo_url, post.text)

        if recognition.spam:
            post = self.storage.mark_post_spam(user_id, post_id)
            log.info("🚫 Spam detected")
            await self._notify(user_id, post_id, message(lang, "spamDetected"), log)
            return post

        insights = None
        ingredients = []
        description = format_ingredients(lang, recognition.ingredients)
        if description:
            log.info("🥗 Analyzing nutrition", ingredients=len(recognition.ingredients))
            nutrition = await self.recognizer.analyze_nutrition(lang, description)
            ingredients = nutrition.ingredients
            insights = aggregate_insights(ingredients)
        else:
            log.warning("⚠️ No ingredients recognized, skipping nutrition")

        post = self.storage.save_enrichment(
            user_id,
            post_id,
            Enrichment(
                dish_name=recognition.dish,
                ingredients=ingredients,
                food_insights=insights,
                tags=recognition.tags,
                language=lang,
                health_rating=recognition.health_rating,
                aesthetic_rating=recognition.aesthetic_rating,
            ),
        )
        log.info(
            "✅ Post enriched",
            dish=post.dish_name,
            calories=post.food_insights.calories if post.food_insights else None,
        )

        if post.food_insights and post.dish_name:
            text = insights_text(lang, post.dish_name, post.food_insights)
        else:
            text = message(lang, "insightsNotFound")
        await self._notify(user_id, post_id, text, log, reply_markup=share_keyboard(lang, post_id))
        return post

    def _mark_failed(self, post_id: int, user_id: int, log):
        try:
            self.storage.mark_enrichment_failed(user_id, post_id)
        except EatsomeError as e:
            log.error("⚠️ Failed to mark post as failed", error=str(e))

    async def _notify(self, user_id: int, post_id: int, text: str, log, reply_markup=None):
        if self.notifier is None:
            return
        try:
            user = self.storage.get_user(user_id)
            await self.notifier.edit_last(user.chat_id, post_id, text, reply_markup)
        except (EatsomeError, TelegramAPIError) as e:
            log.warning("⚠️ Failed to deliver enrichment result", error=str(e))


class PipelineRunner:
    """Detaches pipeline runs from the request that created the post."""

    def __init__(self, pipeline: EnrichmentPipeline, supervisor: TaskSupervisor):
        self.pipeline = pipeline
        self.supervisor = supervisor

    def submit(
        self, post_id: int, user_id: int, locale: Optional[str] = None, force: bool = False
    ) -> asyncio.Task:
        return self.supervisor.spawn(
            self.pipeline.run(post_id, user_id, locale, force=force),
            name=f"enrich-post-{post_id}",
            key=("enrich", post_id),
        )
