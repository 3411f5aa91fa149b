# eatsome/codec.py
"""
Encoding of structured post fields to and from their column text.

Posts store the ingredient breakdown and the aggregated food insights as JSON
text. Everything that crosses the persistence boundary goes through the
functions below so the table model never holds domain objects.
"""
import json
from typing import List, Optional

from .errors import PersistenceError
from .models import FoodInsights, Ingredient


def encode_ingredients(ingredients: List[Ingredient]) -> Optional[str]:
    if not ingredients:
        return None
    return json.dumps([i.model_dump() for i in ingredients], ensure_ascii=False)


def decode_ingredients(raw: Optional[str]) -> List[Ingredient]:
    if not raw:
        return []
    try:
        return [Ingredient.model_validate(item) for item in json.loads(raw)]
    except (ValueError, TypeError) as e:
        raise PersistenceError(f"Corrupt ingredients column: {e}") from e


def encode_food_insights(insights: Optional[FoodInsights]) -> Optional[str]:
    if insights is None:
        return None
    return json.dumps(insights.model_dump())


def decode_food_insights(raw: Optional[str]) -> Optional[FoodInsights]:
    if not raw:
        return None
    try:
        return FoodInsights.model_validate(json.loads(raw))
    except (ValueError, TypeError) as e:
        raise PersistenceError(f"Corrupt food_insights column: {e}") from e
