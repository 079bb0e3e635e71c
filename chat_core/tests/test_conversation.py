from datetime import datetime, timedelta, timezone

from chat_core.domain.conversation import (
    ChatSettings,
    ConversationSession,
    DEFAULT_TITLE,
    Message,
    MessageMetadata,
)
from chat_core.domain.personas import Persona
from chat_core.prompts import load_persona_prompt


def test_session_append_keeps_timestamp_order():
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    session = ConversationSession()
    session.append(Message(content="third", is_user=True, timestamp=base + timedelta(seconds=2)))
    session.append(Message(content="first", is_user=True, timestamp=base))
    session.append(Message(content="second", is_user=False, timestamp=base + timedelta(seconds=1)))
    assert [m.content for m in session.messages] == ["first", "second", "third"]
    assert session.message_count == 3
    assert session.last_message.content == "third"
    assert session.first_user_message.content == "first"


def test_session_mutations_bump_last_modified():
    session = ConversationSession()
    session.last_modified = datetime(2000, 1, 1, tzinfo=timezone.utc)
    session.append(Message(content="hi", is_user=True))
    assert session.last_modified.year > 2000
    before = session.last_modified
    session.set_title("Trip Planning")
    assert session.last_modified >= before
    assert not session.has_default_title


def test_message_reactions_have_no_duplicates():
    msg = Message(content="ok", is_user=False)
    once = msg.with_reaction("👍")
    twice = once.with_reaction("👍")
    assert twice is once
    assert once.with_reaction("❤️").reactions == ["👍", "❤️"]
    assert msg.reactions == []


def test_metadata_confidence_is_clamped():
    assert MessageMetadata(confidence=1.7).confidence == 1.0
    assert MessageMetadata(confidence=-0.2).confidence == 0.0
    assert MessageMetadata().confidence is None


def test_session_dict_round_trip():
    session = ConversationSession(title="Music Theory", persona=Persona.MUSICIAN)
    reply = Message(
        content="Try the circle of fifths.",
        is_user=False,
        metadata=MessageMetadata(confidence=0.8, tone="warm", topics=["harmony"]),
    ).with_reaction("🎵")
    session.append(Message(content="How do chords work?", is_user=True))
    session.append(reply)
    data = session.to_dict()
    assert data["created_at"].endswith("Z")
    restored = ConversationSession.from_dict(data)
    assert restored.to_dict() == data
    assert restored.persona is Persona.MUSICIAN
    assert restored.messages[1].metadata.topics == ["harmony"]


def test_chat_settings_defaults_and_round_trip():
    cs = ChatSettings()
    assert cs.persona is Persona.NONE
    assert cs.streaming_enabled and cs.voice_enabled and cs.auto_save_conversations
    assert cs.max_context_length == 8000
    changed = ChatSettings(persona=Persona.TECH_LEAD, streaming_enabled=False)
    assert ChatSettings.from_dict(changed.to_dict()) == changed
    assert ChatSettings.from_dict({}) == ChatSettings()


def test_persona_prompts():
    assert load_persona_prompt(Persona.NONE) == ""
    for persona in Persona:
        if persona is Persona.NONE:
            continue
        assert persona.system_prompt
    assert Persona.parse("Tech Lead") is Persona.TECH_LEAD
    assert Persona.parse("COMEDIAN") is Persona.COMEDIAN
    assert Persona.parse("unknown") is Persona.NONE
    assert ConversationSession().title == DEFAULT_TITLE
