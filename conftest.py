import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from tale_forge.backend.storage.memory import InMemoryStore
from tale_forge.common.config import Settings

GOOD_REPLY = json.dumps(
    {
        "story_text": "Pip the fox found a tiny glowing door under the old oak tree.",
        "choices": [
            "Knock on the glowing door",
            "Ask the wise owl for help",
            "Follow the trail of berries",
        ],
    }
)
PROSE_REPLY = "Pip the fox looked around the quiet meadow and smiled at the sunrise."


def make_provider(name: str, reply: str = GOOD_REPLY, error: Exception = None) -> MagicMock:
    """A ChatProvider double whose ``generate`` is an AsyncMock."""
    provider = MagicMock()
    provider.name = name
    provider.generate = AsyncMock(return_value=reply, side_effect=error)
    return provider


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(use_local_db=True, media_dir=tmp_path / "media")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
