# eatsome/locales.py
"""
Per-locale prompt and message tables.

The tables are built once at import time and exposed read-only. Lookups for
an unsupported locale fall back to DEFAULT_LOCALE.
"""
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from aiogram.utils.text_decorations import html_decoration

from .models import FoodInsights, RecognizedIngredient

DEFAULT_LOCALE = "en"


@dataclass(frozen=True)
class PromptContent:
    analyze_prompt: str
    analyze_description: str
    spam_description: str
    dish_description: str
    tags_description: str
    ingredients_description: str
    ingredient_name_description: str
    ingredient_amount_description: str
    health_rating_description: str
    aesthetic_rating_description: str
    nutrition_prompt: str
    ingredient_list_description: str
    macronutrients_description: str
    calories_description: str
    ingredient_weight_description: str
    ingredient_line: str
    tags: Tuple[str, ...]


_PROMPTS = {
    "en": PromptContent(
        analyze_prompt="What dish or food is displayed on this picture?",
        analyze_description=(
            "Analyzes an image of food to determine if it's spam, identify the dish, tag the image "
            "based on its contents, and list the ingredients along with their approximate amounts."
        ),
        spam_description="Indicates whether the image is considered spam or irrelevant to the task",
        dish_description="The identified main dish in the image.",
        tags_description=(
            "Tags that describe the dish displayed in the photo based on dietary preferences, "
            "ingredients, or taste profiles."
        ),
        ingredients_description=(
            "List all visible ingredients and estimate the approximate amount of each in grams, "
            "using standard objects in the photo such as utensils or dishware for scale."
        ),
        ingredient_name_description="Name of the ingredient",
        ingredient_amount_description="Approximate amount of the ingredient in grams",
        health_rating_description="How healthy the dish is, from 1 (junk) to 10 (very healthy).",
        aesthetic_rating_description="How appetizing the dish looks, from 1 to 10.",
        nutrition_prompt=(
            "Analyzing the nutritional information of the food and provide insights on the calories, "
            "macronutrients, and dietary information."
        ),
        ingredient_list_description="List of ingredients with their nutritional information.",
        macronutrients_description="Breakdown of macronutrients in grams for this ingredient.",
        calories_description="Calories for this ingredient.",
        ingredient_weight_description="Weight of the ingredient in grams",
        ingredient_line="Ingredient: {name}, Amount: {amount} grams.",
        tags=(
            "vegan", "gluten-free", "high-protein", "low-carb", "paleo", "dairy-free",
            "vegetarian", "sugar-free", "low-fat", "mediterranean", "high-fiber",
        ),
    ),
    "ru": PromptContent(
        analyze_prompt="Какое блюдо или продукт изображены на этой картинке?",
        analyze_description=(
            "Анализ изображения с едой для определения, является ли оно спамом, идентификации блюда, "
            "маркировки изображения по содержанию и перечисления ингредиентов вместе с их "
            "приблизительным количеством."
        ),
        spam_description="Указывает, считается ли изображение спамом или не относящимся к задаче",
        dish_description="Определенное основное блюдо на изображении.",
        tags_description=(
            "Теги, описывающие блюдо на фото с учетом диетических предпочтений, ингредиентов "
            "или вкусовых профилей."
        ),
        ingredients_description=(
            "Перечисли все видимые ингредиенты и оцени приблизительное количество каждого в граммах, "
            "используя стандартные объекты на фото, такие как столовые приборы или посуда для масштабирования."
        ),
        ingredient_name_description="Название ингредиента",
        ingredient_amount_description="Приблизительное количество ингредиента в граммах",
        health_rating_description="Насколько полезно блюдо, от 1 (вредно) до 10 (очень полезно).",
        aesthetic_rating_description="Насколько аппетитно выглядит блюдо, от 1 до 10.",
        nutrition_prompt=(
            "Проанализируй информацию о питательности продукта и предоставь данные о калориях, "
            "макронутриентах и диетической информации."
        ),
        ingredient_list_description="Список ингредиентов с их питательной информацией.",
        macronutrients_description="Разбивка макронутриентов в граммах для этого ингредиента.",
        calories_description="Калории для этого ингредиента.",
        ingredient_weight_description="Вес ингредиента в граммах",
        ingredient_line="Ингредиент: {name}, Количество: {amount} грамм.",
        tags=(
            "веган", "без глютена", "богатый белком", "низкоуглеводный", "палео", "без лактозы",
            "вегетарианский", "без сахара", "низкожирный", "средиземноморский", "богатый клетчаткой",
        ),
    ),
}

_MESSAGES = {
    "en": {
        "welcome": "This bot will help you track your meals and get insights about your nutrition.\nTry sending a photo",
        "openWebApp": "You can open the web app by tapping the button below.",
        "gettingInsights": "Getting insights from the image...",
        "photoAddError": "Please send the picture as a 'Photo', not as a 'File'.",
        "uploadError": "Failed to upload the image. Please try again.",
        "insightsNotFound": "No insights found for this image.",
        "enrichmentFailed": "We could not analyze this photo. Please try sending it again.",
        "openApp": "Open",
        "checkInApp": "Check the insights in the app",
        "shareWithCommunity": "Share with community",
        "spamDetected": "Cannot process the image. It seems like it contains spam.",
        "userDeleted": "User deleted",
        "userDeleteFailed": "Failed to delete user",
        "menuButton": "Open App",
        "insights": "{dish}\nCalories: {calories} kcal\n\nProteins: {proteins} g\nCarbohydrates: {carbohydrates} g\nFats: {fats} g",
    },
    "ru": {
        "welcome": "Этот бот поможет вам отслеживать приемы пищи и получать информацию о вашем питании.\nПопробуй отправить фото",
        "openWebApp": "Вы можете открыть веб-приложение, нажав на кнопку ниже.",
        "gettingInsights": "Обработка в процессе...",
        "photoAddError": "Пожалуйста, отправьте изображение как 'Фото', а не как 'Файл'.",
        "uploadError": "Не удалось загрузить изображение. Пожалуйста, попробуйте еще раз.",
        "insightsNotFound": "Для этого изображения не найдено данных.",
        "enrichmentFailed": "Не удалось проанализировать фото. Попробуйте отправить его еще раз.",
        "openApp": "Открыть",
        "checkInApp": "Проверьте результат в приложении",
        "shareWithCommunity": "Поделиться с сообществом",
        "spamDetected": "Не удалось обработать изображение. Похоже, что оно содержит спам.",
        "userDeleted": "Пользователь удален",
        "userDeleteFailed": "Не удалось удалить пользователя",
        "menuButton": "Открыть",
        "insights": "{dish}\n\nКалории: {calories} ккал\n\nБелки: {proteins} г\nУглеводы: {carbohydrates} г\nЖиры: {fats} г",
    },
}

PROMPTS: Mapping[str, PromptContent] = MappingProxyType(_PROMPTS)
MESSAGES: Mapping[str, Mapping[str, str]] = MappingProxyType(
    {lang: MappingProxyType(table) for lang, table in _MESSAGES.items()}
)
SUPPORTED_LOCALES = frozenset(PROMPTS)


def resolve_locale(code: Optional[str]) -> str:
    """Normalize a language hint ("ru", "ru-RU", None) to a supported locale."""
    if not code:
        return DEFAULT_LOCALE
    lang = code.strip().lower()[:2]
    return lang if lang in SUPPORTED_LOCALES else DEFAULT_LOCALE


def prompts_for(locale: Optional[str]) -> PromptContent:
    return PROMPTS[resolve_locale(locale)]


def message(locale: Optional[str], key: str) -> str:
    return MESSAGES[resolve_locale(locale)][key]


def format_ingredients(locale: Optional[str], ingredients: Iterable[RecognizedIngredient]) -> str:
    """Render recognized ingredients as the single-line nutrition request text."""
    line = prompts_for(locale).ingredient_line
    parts = [
        line.format(name=" ".join(i.name.split()), amount=int(i.amount))
        for i in ingredients
    ]
    return " ".join(parts)


def insights_text(locale: Optional[str], dish_name: str, insights: FoodInsights) -> str:
    """HTML message body shown to the user once a post is enriched."""
    return message(locale, "insights").format(
        dish=html_decoration.bold(html_decoration.quote(dish_name)),
        calories=insights.calories,
        proteins=insights.proteins,
        carbohydrates=insights.carbohydrates,
        fats=insights.fats,
    )
