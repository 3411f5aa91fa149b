import itertools
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from eatsome.database import create_db_engine, init_db
from eatsome.models import User
from eatsome.notifications import TelegramNotifier
from eatsome.storage import Storage


@pytest.fixture
def storage():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield Storage(engine)
    engine.dispose()


@pytest.fixture
def user(storage):
    return storage.create_user(User(chat_id=1001, username="alice", language="en"))


@pytest.fixture
def other_user(storage):
    return storage.create_user(User(chat_id=2002, username="bob", language="ru"))


@pytest.fixture
def bot():
    """Telegram Bot double; send_message hands out increasing message ids."""
    ids = itertools.count(100)
    fake = MagicMock()
    fake.send_message = AsyncMock(side_effect=lambda **kwargs: SimpleNamespace(message_id=next(ids)))
    fake.edit_message_text = AsyncMock()
    fake.answer_callback_query = AsyncMock()
    fake.set_chat_menu_button = AsyncMock()
    return fake


@pytest.fixture
def notifier(bot, storage):
    return TelegramNotifier(bot, storage)
