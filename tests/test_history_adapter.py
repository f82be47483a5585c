from __future__ import annotations

import pytest

from src.pagesmith.domain.chat_models import Message
from src.pagesmith.services import history_adapter as ha


def _msgs(*pairs):
    return [Message(role=role, content=content) for role, content in pairs]


def test_history_has_preamble_plus_all_but_last_message():
    messages = _msgs(
        ("user", "Landing page for a bakery"),
        ("assistant", "```html\n<h1>Bakery</h1>\n```"),
        ("user", "Make the header blue"),
    )
    turn = ha.adapt_turn(messages)

    # n messages -> 2 preamble entries + (n - 1) history entries
    assert len(turn.history) == len(messages) + 1
    assert turn.prompt == "Make the header blue"

    first, second = turn.history[0], turn.history[1]
    assert first.role == "user"
    assert first.parts[0].startswith(ha.INSTRUCTION_PREFIX)
    assert "```html" in first.parts[0]
    assert second.role == "model"
    assert second.parts == [ha.ACKNOWLEDGEMENT]

    assert [e.role for e in turn.history[2:]] == ["user", "model"]
    assert turn.history[3].parts == ["```html\n<h1>Bakery</h1>\n```"]


def test_single_message_yields_preamble_only():
    turn = ha.adapt_turn(_msgs(("user", "A portfolio page")))
    assert turn.history == ha.preamble()
    assert turn.prompt == "A portfolio page"


def test_empty_turn_raises():
    with pytest.raises(ha.EmptyTurn):
        ha.adapt_turn([])


@pytest.mark.parametrize(
    "role, expected",
    [("user", "user"), ("assistant", "model"), ("model", "model"), ("system", "model")],
)
def test_role_mapping(role, expected):
    assert ha.to_provider_role(role) == expected


def test_content_and_prompt_pass_through_verbatim():
    messages = _msgs(("user", "  spaced\n\tout  "), ("system", "keep it short"), ("assistant", "  trailing  "))
    turn = ha.adapt_turn(messages)
    assert turn.history[2].parts == ["  spaced\n\tout  "]
    assert turn.history[3].role == "model"
    assert turn.history[3].parts == ["keep it short"]
    # Whatever the last message is, it is the prompt
    assert turn.prompt == "  trailing  "


def test_custom_instruction_replaces_default_prompt():
    turn = ha.adapt_turn(_msgs(("user", "hi")), instruction="Only answer in HTML.")
    assert turn.history[0].parts == [ha.INSTRUCTION_PREFIX + "Only answer in HTML."]


def test_adapt_turn_does_not_mutate_input():
    messages = _msgs(("user", "one"), ("user", "two"))
    ha.adapt_turn(messages)
    ha.adapt_turn(messages)
    assert [m.content for m in messages] == ["one", "two"]
    assert len(ha.adapt_turn(messages).history) == 3
