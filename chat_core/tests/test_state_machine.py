import pytest

from chat_core.domain.exceptions import IllegalTransitionError
from chat_core.domain.state import ChatStatus, StateMachine


def test_state_machine_normal_turn_sequence():
    sm = StateMachine()
    seen = []
    sm.add_listener(lambda old, new: seen.append((old.status, new.status)))
    sm.transition(ChatStatus.THINKING)
    sm.transition(ChatStatus.STREAMING)
    sm.transition(ChatStatus.ACTIVE)
    assert seen == [
        (ChatStatus.ACTIVE, ChatStatus.THINKING),
        (ChatStatus.THINKING, ChatStatus.STREAMING),
        (ChatStatus.STREAMING, ChatStatus.ACTIVE),
    ]


def test_state_machine_repeated_transition_is_noop():
    sm = StateMachine()
    seen = []
    sm.add_listener(lambda old, new: seen.append(new.status))
    sm.transition(ChatStatus.THINKING)
    sm.transition(ChatStatus.THINKING)
    assert seen == [ChatStatus.THINKING]


def test_state_machine_rejects_illegal_transition():
    sm = StateMachine()
    with pytest.raises(IllegalTransitionError):
        sm.transition(ChatStatus.STREAMING)
    sm.transition(ChatStatus.THINKING)
    sm.transition(ChatStatus.STREAMING)
    with pytest.raises(IllegalTransitionError):
        sm.transition(ChatStatus.THINKING)
    with pytest.raises(ValueError):
        sm.transition(ChatStatus.ERROR)


def test_state_machine_accepts_input_only_when_idle():
    sm = StateMachine()
    assert sm.accepts_input
    sm.transition(ChatStatus.VOICE_LISTENING)
    assert sm.accepts_input
    sm.transition(ChatStatus.THINKING)
    assert not sm.accepts_input
    assert sm.state.is_generating
    sm.fail("boom")
    assert not sm.accepts_input


def test_state_machine_error_dismiss_and_fatal():
    sm = StateMachine()
    sm.transition(ChatStatus.THINKING)
    sm.fail("network down")
    assert sm.state.detail == "network down"
    assert sm.dismiss()
    assert sm.status is ChatStatus.ACTIVE

    sm.fail("session broken", fatal=True)
    assert not sm.dismiss()
    # 非致命错误不会覆盖致命错误
    sm.fail("minor")
    assert sm.state.detail == "session broken"
    assert not sm.can_transition(ChatStatus.ACTIVE)
    with pytest.raises(IllegalTransitionError):
        sm.transition(ChatStatus.ACTIVE)
    sm.reset()
    assert sm.status is ChatStatus.ACTIVE
    assert not sm.state.fatal
