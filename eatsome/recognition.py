# eatsome/recognition.py
import asyncio
import time
from typing import Awaitable, Callable, Optional, Sequence, Type, TypeVar

import httpx
import openai
import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError as SchemaError

from .config import Settings
from .errors import (
    ContentFiltered,
    ModelRefused,
    ProviderUnavailable,
    ResponseMalformed,
    TruncatedOutput,
)
from .locales import PromptContent, prompts_for
from .models import ImageRecognition, NutritionInfo

logger = structlog.get_logger()

MODEL_ID = "gpt-4o-2024-08-06"
IMAGE_CHECK_DELAYS = (0.0, 1.0, 3.0)
IMAGE_MAX_TOKENS = 500
NUTRITION_MAX_TOKENS = 800

T = TypeVar("T", ImageRecognition, NutritionInfo)


def image_response_format(content: PromptContent) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "food_image_analysis",
            "description": content.analyze_description,
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "spam": {"type": "boolean", "description": content.spam_description},
                    "dish": {"type": "string", "description": content.dish_description},
                    "tags": {
                        "type": "array",
                        "items": {"type": "string", "enum": list(content.tags)},
                        "description": content.tags_description,
                    },
                    "ingredients": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string", "description": content.ingredient_name_description},
                                "amount": {"type": "number", "description": content.ingredient_amount_description},
                            },
                            "additionalProperties": False,
                            "required": ["name", "amount"],
                        },
                        "description": content.ingredients_description,
                    },
                    "health_rating": {"type": "integer", "description": content.health_rating_description},
                    "aesthetic_rating": {"type": "integer", "description": content.aesthetic_rating_description},
                },
                "additionalProperties": False,
                "required": ["ingredients", "dish", "spam", "tags", "health_rating", "aesthetic_rating"],
            },
        },
    }


def nutrition_response_format(content: PromptContent) -> dict:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "nutrition_info",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "ingredients": {
                        "type": "array",
                        "description": content.ingredient_list_description,
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string", "description": content.ingredient_name_description},
                                "calories": {"type": "number", "description": content.calories_description},
                                "weight": {"type": "number", "description": content.ingredient_weight_description},
                                "macronutrients": {
                                    "type": "object",
                                    "description": content.macronutrients_description,
                                    "properties": {
                                        "carbohydrates": {"type": "number"},
                                        "proteins": {"type": "number"},
                                        "fats": {"type": "number"},
                                    },
                                    "additionalProperties": False,
                                    "required": ["carbohydrates", "proteins", "fats"],
                                },
                            },
                            "additionalProperties": False,
                            "required": ["name", "calories", "macronutrients", "weight"],
                        },
                    }
                },
                "additionalProperties": False,
                "required": ["ingredients"],
            },
        },
    }


class RecognitionClient:
    """
    Two-stage food recognition on top of an OpenAI-compatible chat API.

    analyze_image() turns a photo into dish/spam/tags/ingredients and
    analyze_nutrition() turns an ingredient description into a per-ingredient
    calorie and macro breakdown. Both raise a RecognitionError subclass
    instead of returning partial data.
    """

    def __init__(
        self,
        openai_client,
        http_client: httpx.AsyncClient,
        model_id: str = MODEL_ID,
        deadline: float = 60.0,
        check_delays: Sequence[float] = IMAGE_CHECK_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.openai = openai_client
        self.http = http_client
        self.model_id = model_id
        self.deadline = deadline
        self.check_delays = tuple(check_delays)
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecognitionClient":
        client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.ai_timeout_seconds,
            max_retries=settings.openai_max_retries,
        )
        http_client = httpx.AsyncClient(
            timeout=settings.image_check_timeout_seconds, follow_redirects=True
        )
        # One deadline covers the SDK's own retries
        deadline = settings.ai_timeout_seconds * (settings.openai_max_retries + 1)
        return cls(
            client,
            http_client,
            model_id=settings.model_id,
            deadline=deadline,
            check_delays=settings.image_check_delays,
        )

    async def aclose(self):
        await self.http.aclose()
        await self.openai.close()

    async def wait_for_image(self, image_url: str):
        """Poll the image URL until it answers 200; the upload may still be propagating."""
        for attempt, delay in enumerate(self.check_delays, start=1):
            await self.sleep(delay)
            if await self._image_available(image_url):
                return
            logger.info("⏳ Image not available yet", url=image_url, attempt=attempt)

        logger.warning("❌ Image not available after retries", url=image_url)
        raise ProviderUnavailable(f"Image not available: {image_url}")

    async def _image_available(self, image_url: str) -> bool:
        try:
            async with self.http.stream("GET", image_url) as response:
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.info("⚠️ Failed to fetch image", url=image_url, error=str(e))
            return False

    async def analyze_image(self, locale: str, image_url: str, caption: Optional[str] = None) -> ImageRecognition:
        content = prompts_for(locale)

        user_content = []
        if caption:
            user_content.append({"type": "text", "text": caption})
        user_content.append({"type": "image_url", "image_url": {"url": image_url}})

        await self.wait_for_image(image_url)

        result = await self._complete(
            ImageRecognition,
            messages=[
                {"role": "system", "content": content.analyze_prompt},
                {"role": "user", "content": user_content},
            ],
            response_format=image_response_format(content),
            max_tokens=IMAGE_MAX_TOKENS,
        )
        logger.info(
            "🤖 Image recognized",
            dish=result.dish,
            spam=result.spam,
            tags=result.tags,
            ingredients=[i.name for i in result.ingredients],
        )
        return result

    async def analyze_nutrition(self, locale: str, description: str) -> NutritionInfo:
        content = prompts_for(locale)
        logger.info("🥗 Getting nutrition info", description=description)

        result = await self._complete(
            NutritionInfo,
            messages=[
                {"role": "system", "content": content.nutrition_prompt},
                {"role": "user", "content": description},
            ],
            response_format=nutrition_response_format(content),
            max_tokens=NUTRITION_MAX_TOKENS,
        )
        logger.info("🤖 Nutrition info", ingredients=len(result.ingredients))
        return result

    async def _complete(self, result_type: Type[T], **request) -> T:
        schema_name = request["response_format"]["json_schema"]["name"]
        logger.info("🚀 Sending request", model=self.model_id, schema=schema_name)
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                self.openai.chat.completions.create(model=self.model_id, temperature=0.7, **request),
                timeout=self.deadline,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"AI provider did not answer within {self.deadline}s") from e
        except openai.APIConnectionError as e:
            raise ProviderUnavailable(f"Failed to reach AI provider: {e}") from e
        except openai.APIStatusError as e:
            raise ProviderUnavailable(f"Unexpected status code: {e.status_code}") from e

        logger.info("⏱️ AI response received", schema=schema_name, latency=round(time.time() - start_time, 3))

        if not response.choices:
            raise ResponseMalformed("No choices in AI response")

        choice = response.choices[0]
        refusal = getattr(choice.message, "refusal", None)

        if choice.finish_reason == "length":
            raise TruncatedOutput(f"Unexpected finish reason: {choice.finish_reason}")
        if refusal:
            raise ModelRefused(f"AI provider refused to process the request: {refusal}")
        if choice.finish_reason == "content_filter":
            raise ContentFiltered("AI provider content filter triggered")
        if choice.finish_reason != "stop":
            raise ResponseMalformed(f"Unexpected finish reason: {choice.finish_reason}")
        if not choice.message.content:
            raise ResponseMalformed("Empty AI response")

        try:
            return result_type.model_validate_json(choice.message.content)
        except SchemaError as e:
            raise ResponseMalformed(f"Failed to parse {schema_name}: {e}") from e
