import pytest

from chat_client.errors import EmptyMessage, MessageTooLong, SendError
from chat_client.sanitize import MAX_MESSAGE_CHARS, prepare_outgoing, sanitize_input


def test_sanitize_strips_markup_fragments():
    assert sanitize_input("  <b>hi</b>  ") == "bhi/b"
    assert sanitize_input("JavaScript:alert(1)") == "alert(1)"
    assert sanitize_input('img onerror="x"') == 'img "x"'
    assert sanitize_input(None) == ""


def test_prepare_outgoing_trims_and_keeps_text():
    assert prepare_outgoing("  hello  ") == "hello"


@pytest.mark.parametrize("text", ["", "   ", "<>", None])
def test_prepare_outgoing_rejects_empty(text):
    with pytest.raises(EmptyMessage):
        prepare_outgoing(text)


def test_prepare_outgoing_enforces_length():
    assert prepare_outgoing("x" * MAX_MESSAGE_CHARS) == "x" * MAX_MESSAGE_CHARS
    with pytest.raises(MessageTooLong):
        prepare_outgoing("x" * (MAX_MESSAGE_CHARS + 1))
    with pytest.raises(SendError):
        prepare_outgoing("abcdef", max_chars=5)
