import pytest

from charge_watcher.errors import InvalidInput
from charge_watcher.names import (
    DEFAULT_DEVICE_NAMES,
    clean_label,
    default_name,
    is_default_name,
    is_manual_name,
    manual_session_name,
    next_default_name,
)


def test_default_names_in_order_then_wrap():
    assert [default_name(i) for i in range(3)] == ["Hugo", "Egon", "Tom"]
    assert default_name(9) == "Frank"
    assert default_name(10) == "Hugo 2"
    assert default_name(21) == "Egon 3"


def test_next_default_name_skips_taken():
    assert next_default_name(0) == "Hugo"
    assert next_default_name(0, {"Hugo", "Egon"}) == "Tom"
    assert next_default_name(9, {"Frank"}) == "Hugo 2"


def test_default_and_manual_names():
    for name in DEFAULT_DEVICE_NAMES:
        assert is_default_name(name)
        assert not is_manual_name(name)
    assert is_default_name("Diana 4")
    assert not is_default_name("Hugo's laptop")
    assert is_manual_name("MacBook")
    assert not is_manual_name(None)
    assert not is_manual_name("   ")


def test_charger_placeholder_is_not_a_manual_name(make_session):
    placeholder = make_session(1, [10, 10, 10], name="Office Charger")
    assert manual_session_name(placeholder) is None

    by_id = make_session(2, [10, 10, 10], name="charger1")
    assert manual_session_name(by_id) is None

    labelled = make_session(3, [10, 10, 10], name="MacBook")
    assert manual_session_name(labelled) == "MacBook"

    defaulted = make_session(4, [10, 10, 10], name="Tom")
    assert manual_session_name(defaulted) is None


@pytest.mark.parametrize("label", [None, "", "  \t"])
def test_clean_label_rejects_blank(label):
    with pytest.raises(InvalidInput):
        clean_label(label)


def test_clean_label_strips():
    assert clean_label("  iPhone ") == "iPhone"
