"""
Display-name fallback chain.
"""
import pytest

from services.display_names import (
    KNOWN_PLACEHOLDERS,
    UNKNOWN_RECIPIENT,
    UNKNOWN_USER,
    first_usable_name,
    is_usable_name,
    resolve_display_name,
)


@pytest.mark.parametrize("placeholder", sorted(KNOWN_PLACEHOLDERS))
def test_placeholders_are_not_usable(placeholder):
    assert is_usable_name(placeholder) is False


@pytest.mark.parametrize("blank", [None, "", "   "])
def test_blank_is_not_usable(blank):
    assert is_usable_name(blank) is False


def test_raw_user_id_is_not_usable():
    assert is_usable_name("u42", user_id="u42") is False
    assert is_usable_name("u42", user_id="u7") is True


def test_profile_name_wins():
    assert resolve_display_name("u2", profile_name="Coach Kim", denormalized_name="Kim (old)") == "Coach Kim"


def test_falls_back_to_denormalized_when_profile_is_placeholder():
    assert resolve_display_name("u2", profile_name="Anonymous", denormalized_name="Kim") == "Kim"


def test_falls_back_to_unknown_user():
    assert resolve_display_name("u2", profile_name=None, denormalized_name="Unknown Recipient") == UNKNOWN_USER


def test_sources_are_evaluated_lazily():
    calls = []

    def first():
        calls.append("first")
        return "Alice"

    def second():
        calls.append("second")
        return "Bob"

    assert first_usable_name((first, second)) == "Alice"
    assert calls == ["first"]


def test_custom_default_and_stripping():
    assert first_usable_name((lambda: None,), default=UNKNOWN_RECIPIENT) == UNKNOWN_RECIPIENT
    assert first_usable_name((lambda: "  Dana  ",)) == "Dana"
