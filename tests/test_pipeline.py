import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from eatsome.errors import ProviderUnavailable
from eatsome.models import (
    EnrichmentStatus,
    ImageRecognition,
    Ingredient,
    Macronutrients,
    NutritionInfo,
    RecognizedIngredient,
)
from eatsome.pipeline import EnrichmentPipeline, PipelineRunner, aggregate_insights
from eatsome.tasks import TaskSupervisor


def pasta_recognition():
    return ImageRecognition(
        spam=False,
        dish="Pasta",
        tags=["Italian", "Dinner"],
        ingredients=[
            RecognizedIngredient(name="pasta", amount=100),
            RecognizedIngredient(name="sauce", amount=50),
        ],
        health_rating=6,
        aesthetic_rating=8,
    )


def pasta_nutrition():
    return NutritionInfo(
        ingredients=[
            Ingredient(
                name="pasta", weight=100, calories=200,
                macronutrients=Macronutrients(proteins=7, fats=1.5, carbohydrates=40),
            ),
            Ingredient(
                name="sauce", weight=50, calories=100,
                macronutrients=Macronutrients(proteins=3, fats=0.5, carbohydrates=15),
            ),
        ]
    )


def make_recognizer(recognition=None, nutrition=None):
    recognizer = MagicMock()
    recognizer.analyze_image = AsyncMock(return_value=recognition or pasta_recognition())
    recognizer.analyze_nutrition = AsyncMock(return_value=nutrition or pasta_nutrition())
    return recognizer


def test_aggregate_truncates_totals():
    insights = aggregate_insights([
        Ingredient(name="a", calories=120.7, macronutrients=Macronutrients(proteins=1.9)),
        Ingredient(name="b", calories=80.2, macronutrients=Macronutrients(proteins=1.9)),
    ])
    assert insights.calories == 200
    assert insights.proteins == 3


def test_aggregate_of_nothing_is_zero():
    insights = aggregate_insights([])
    assert (insights.calories, insights.proteins, insights.fats, insights.carbohydrates) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_pasta_end_to_end(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg", text="lunch")
    recognizer = make_recognizer()

    result = await EnrichmentPipeline(storage, recognizer).run(post.id, user.id, "en")

    recognizer.analyze_image.assert_awaited_once_with("en", "https://cdn/pasta.jpg", "lunch")
    recognizer.analyze_nutrition.assert_awaited_once_with(
        "en", "Ingredient: pasta, Amount: 100 grams. Ingredient: sauce, Amount: 50 grams."
    )
    assert result.dish_name == "Pasta"
    assert result.enrichment_status == EnrichmentStatus.ENRICHED

    stored = storage.get_post(post.id)
    assert stored.food_insights.calories == 300
    assert stored.food_insights.proteins == 10
    assert stored.food_insights.fats == 2
    assert stored.food_insights.carbohydrates == 55
    assert [i.name for i in stored.ingredients] == ["pasta", "sauce"]
    assert [t.name for t in stored.tags] == ["Dinner", "Italian"]
    assert {t.language for t in stored.tags} == {"en"}
    assert stored.health_rating == 6
    assert stored.aesthetic_rating == 8
    assert not stored.is_spam


@pytest.mark.asyncio
async def test_spam_skips_nutrition(storage, user):
    post = storage.create_post(user.id, "https://cdn/cat.jpg")
    recognizer = make_recognizer(recognition=ImageRecognition(spam=True))

    await EnrichmentPipeline(storage, recognizer).run(post.id, user.id, "en")

    recognizer.analyze_nutrition.assert_not_awaited()
    stored = storage.get_post(post.id)
    assert stored.is_spam
    assert stored.enrichment_status == EnrichmentStatus.SPAM
    assert stored.dish_name is None
    assert stored.food_insights is None
    assert stored.tags == []


@pytest.mark.asyncio
async def test_no_ingredients_skips_nutrition(storage, user, notifier, bot):
    post = storage.create_post(user.id, "https://cdn/plate.jpg")
    storage.record_sent_message(user.chat_id, post.id, 7)
    recognizer = make_recognizer(recognition=ImageRecognition(spam=False, dish="Plate", tags=["Dinner"]))

    await EnrichmentPipeline(storage, recognizer, notifier).run(post.id, user.id, "en")

    recognizer.analyze_nutrition.assert_not_awaited()
    stored = storage.get_post(post.id)
    assert stored.enrichment_status == EnrichmentStatus.ENRICHED
    assert stored.dish_name == "Plate"
    assert stored.food_insights is None
    assert bot.edit_message_text.await_args.kwargs["text"] == "No insights found for this image."


@pytest.mark.asyncio
async def test_second_run_is_skipped_unless_forced(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    recognizer = make_recognizer()
    pipeline = EnrichmentPipeline(storage, recognizer)

    await pipeline.run(post.id, user.id, "en")
    assert await pipeline.run(post.id, user.id, "en") is None
    assert recognizer.analyze_image.await_count == 1

    await pipeline.run(post.id, user.id, "en", force=True)
    assert recognizer.analyze_image.await_count == 2

    stored = storage.get_post(post.id)
    assert [t.name for t in stored.tags] == ["Dinner", "Italian"]
    assert len(storage.list_tags("en")) == 2


@pytest.mark.asyncio
async def test_failure_keeps_earlier_enrichment(storage, user, notifier, bot):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    storage.record_sent_message(user.chat_id, post.id, 7)
    recognizer = make_recognizer()
    pipeline = EnrichmentPipeline(storage, recognizer, notifier)
    await pipeline.run(post.id, user.id, "en")

    recognizer.analyze_image.side_effect = ProviderUnavailable("image not available")
    with pytest.raises(ProviderUnavailable):
        await pipeline.run(post.id, user.id, "en", force=True)

    stored = storage.get_post(post.id)
    assert stored.enrichment_status == EnrichmentStatus.FAILED
    assert stored.dish_name == "Pasta"
    assert stored.food_insights.calories == 300
    assert [t.name for t in stored.tags] == ["Dinner", "Italian"]
    assert bot.edit_message_text.await_args.kwargs["text"].startswith("We could not analyze")


@pytest.mark.asyncio
async def test_nutrition_failure_writes_nothing(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    recognizer = make_recognizer()
    recognizer.analyze_nutrition.side_effect = ProviderUnavailable("timeout")

    with pytest.raises(ProviderUnavailable):
        await EnrichmentPipeline(storage, recognizer).run(post.id, user.id, "en")

    stored = storage.get_post(post.id)
    assert stored.enrichment_status == EnrichmentStatus.FAILED
    assert stored.dish_name is None
    assert stored.tags == []


@pytest.mark.asyncio
async def test_result_edits_latest_message(storage, user, notifier, bot):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    storage.record_sent_message(user.chat_id, post.id, 10)
    storage.record_sent_message(user.chat_id, post.id, 42)

    await EnrichmentPipeline(storage, make_recognizer(), notifier).run(post.id, user.id, "en")

    bot.edit_message_text.assert_awaited_once()
    kwargs = bot.edit_message_text.await_args.kwargs
    assert kwargs["chat_id"] == user.chat_id
    assert kwargs["message_id"] == 42
    assert "<b>Pasta</b>" in kwargs["text"]
    assert "300 kcal" in kwargs["text"]
    button = kwargs["reply_markup"].inline_keyboard[0][0]
    assert button.callback_data == f"share_{post.id}"


@pytest.mark.asyncio
async def test_missing_message_skips_edit(storage, user, notifier, bot):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")

    result = await EnrichmentPipeline(storage, make_recognizer(), notifier).run(post.id, user.id, "en")

    assert result.enrichment_status == EnrichmentStatus.ENRICHED
    bot.edit_message_text.assert_not_awaited()


@pytest.mark.asyncio
async def test_dish_name_is_html_escaped(storage, user, notifier, bot):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    storage.record_sent_message(user.chat_id, post.id, 5)
    recognition = pasta_recognition()
    recognition.dish = "Mac & <Cheese>"

    await EnrichmentPipeline(storage, make_recognizer(recognition=recognition), notifier).run(post.id, user.id, "en")

    assert "<b>Mac &amp; &lt;Cheese&gt;</b>" in bot.edit_message_text.await_args.kwargs["text"]


@pytest.mark.asyncio
async def test_runner_deduplicates_concurrent_submits(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    release = asyncio.Event()

    async def slow_analyze(*args):
        await release.wait()
        return pasta_recognition()

    recognizer = make_recognizer()
    recognizer.analyze_image = AsyncMock(side_effect=slow_analyze)
    runner = PipelineRunner(EnrichmentPipeline(storage, recognizer), TaskSupervisor())

    first = runner.submit(post.id, user.id, "en")
    second = runner.submit(post.id, user.id, "en")
    assert first is second

    release.set()
    result = await first
    assert result.enrichment_status == EnrichmentStatus.ENRICHED
    assert recognizer.analyze_image.await_count == 1


@pytest.mark.asyncio
async def test_supervisor_keeps_failures(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    recognizer = make_recognizer()
    recognizer.analyze_image.side_effect = ProviderUnavailable("down")
    supervisor = TaskSupervisor()

    PipelineRunner(EnrichmentPipeline(storage, recognizer), supervisor).submit(post.id, user.id, "en")
    await supervisor.join()

    assert supervisor.pending == 0
    assert len(supervisor.failures) == 1
    name, error = supervisor.failures[0]
    assert name == f"enrich-post-{post.id}"
    assert isinstance(error, ProviderUnavailable)


@pytest.mark.asyncio
async def test_single_ingredient_dinner(storage, user):
    post = storage.create_post(user.id, "https://cdn/x.jpg", text="dinner")
    recognizer = make_recognizer(
        recognition=ImageRecognition(
            spam=False, dish="Pasta", ingredients=[RecognizedIngredient(name="pasta", amount=200)]
        ),
        nutrition=NutritionInfo(ingredients=[
            Ingredient(
                name="pasta", calories=300.4, weight=200,
                macronutrients=Macronutrients(proteins=10.9, fats=2.1, carbohydrates=55.6),
            )
        ]),
    )

    await EnrichmentPipeline(storage, recognizer).run(post.id, user.id, "en")

    stored = storage.get_post(post.id)
    assert stored.dish_name == "Pasta"
    assert stored.food_insights.model_dump() == {"calories": 300, "proteins": 10, "fats": 2, "carbohydrates": 55}


@pytest.mark.asyncio
async def test_forced_run_flipping_to_spam_clears_enrichment(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    recognizer = make_recognizer()
    pipeline = EnrichmentPipeline(storage, recognizer)
    await pipeline.run(post.id, user.id, "en")

    recognizer.analyze_image.return_value = ImageRecognition(spam=True)
    await pipeline.run(post.id, user.id, "en", force=True)

    stored = storage.get_post(post.id)
    assert stored.is_spam
    assert stored.enrichment_status == EnrichmentStatus.SPAM
    assert stored.dish_name is None
    assert stored.food_insights is None
    assert stored.ingredients == []
    assert stored.tags == []
    assert stored.health_rating is None


@pytest.mark.asyncio
async def test_cancelled_run_can_be_picked_up_again(storage, user):
    post = storage.create_post(user.id, "https://cdn/pasta.jpg")
    started = asyncio.Event()

    async def never_answers(*args):
        started.set()
        await asyncio.Event().wait()

    recognizer = make_recognizer()
    recognizer.analyze_image = AsyncMock(side_effect=never_answers)
    supervisor = TaskSupervisor()
    pipeline = EnrichmentPipeline(storage, recognizer)

    PipelineRunner(pipeline, supervisor).submit(post.id, user.id, "en")
    await started.wait()
    await supervisor.shutdown(timeout=0.05)

    assert storage.get_post(post.id).enrichment_status == EnrichmentStatus.FAILED
    assert storage.list_posts_by_status([EnrichmentStatus.PENDING, EnrichmentStatus.FAILED]) == [(post.id, user.id)]

    recognizer.analyze_image = AsyncMock(return_value=pasta_recognition())
    result = await pipeline.run(post.id, user.id, "en")
    assert result.enrichment_status == EnrichmentStatus.ENRICHED


@pytest.mark.asyncio
async def test_supervisor_keeps_only_recent_failures():
    supervisor = TaskSupervisor(max_failures=2)

    async def fail(n):
        raise ProviderUnavailable(f"down {n}")

    for n in range(3):
        supervisor.spawn(fail(n), name=f"job-{n}")
    await supervisor.join()

    assert [name for name, _ in supervisor.failures] == ["job-1", "job-2"]
