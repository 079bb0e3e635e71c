import pytest

from chat_core.domain.conversation import DEFAULT_TITLE, ConversationSession, Message
from chat_core.engine.titles import accept_model_title, fallback_title, generate_title


class TitleSession:
    name = "fake"
    instructions = ""

    def __init__(self, fields=None, error=None):
        self.fields = fields or {}
        self.error = error
        self.requests = []

    async def respond(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return dict(self.fields)


def _session(text):
    session = ConversationSession()
    session.append(Message(content=text, is_user=True))
    session.append(Message(content="Sure, happy to help.", is_user=False))
    return session


def test_fallback_title_uses_keywords():
    assert fallback_title("I am planning a trip to Japan in spring") == "planning trip Japan spring"
    assert fallback_title("") == DEFAULT_TITLE
    assert fallback_title("hi") == "hi"
    long_title = fallback_title("Internationalization considerations regarding multilingual deployments")
    assert len(long_title) == 40
    assert long_title.endswith("...")


def test_accept_model_title_rules():
    assert accept_model_title("Travel Planning", 0.9) == "Travel Planning"
    assert accept_model_title("Travel Planning", 0.2) is None
    assert accept_model_title("", 0.9) is None
    long_title = accept_model_title("x" * 80, 0.9)
    assert len(long_title) == 50 and long_title.endswith("...")


def test_long_low_confidence_title_is_rejected_not_truncated():
    assert accept_model_title("x" * 80, 0.2) is None
    assert accept_model_title("x" * 80, None) is None


@pytest.mark.asyncio
async def test_generate_title_prefers_confident_model_title():
    model = TitleSession(fields={"title": "Japan Trip Planning", "confidence": 0.9})
    title = await generate_title(model, _session("I am planning a trip to Japan"))
    assert title == "Japan Trip Planning"
    assert model.requests[0].schema.name == "session_title"


@pytest.mark.asyncio
async def test_generate_title_falls_back_on_low_confidence_or_error():
    low = TitleSession(fields={"title": "Stuff", "confidence": 0.1})
    assert await generate_title(low, _session("Recipe ideas for dinner")) == "Recipe ideas dinner"

    broken = TitleSession(error=RuntimeError("offline"))
    assert await generate_title(broken, _session("Recipe ideas for dinner")) == "Recipe ideas dinner"

    assert await generate_title(None, ConversationSession()) == DEFAULT_TITLE
