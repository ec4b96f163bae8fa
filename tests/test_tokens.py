import pytest

from smarthome_panel.tokens import estimate_tokens


@pytest.mark.parametrize(
    "text,expected",
    [
        ("", 0),
        ("a", 1),
        ("abcd", 1),
        ("abcde", 2),
        ("x" * 400, 100),
        ("x" * 401, 101),
    ],
)
def test_estimate_is_ceiling_of_quarter_length(text: str, expected: int) -> None:
    assert estimate_tokens(text) == expected


def test_estimate_is_monotonic_in_length() -> None:
    previous = 0
    for length in range(0, 200):
        current = estimate_tokens("y" * length)
        assert current >= previous
        previous = current
