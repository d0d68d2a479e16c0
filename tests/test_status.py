from __future__ import annotations

import pytest

from omapi.status import STATUSES, SUCCESS, Status, status_for


def test_table_covers_all_codes() -> None:
    assert len(STATUSES) == 70
    assert [status.code for status in STATUSES] == list(range(70))


def test_success_is_not_an_error() -> None:
    assert SUCCESS == Status(0, "success")
    assert not SUCCESS.is_error
    assert all(status.is_error for status in STATUSES[1:])


@pytest.mark.parametrize(
    ("code", "message"),
    [
        (2, "timed out"),
        (18, "already exists"),
        (23, "not found"),
        (44, "key conflict"),
        (69, "unknown attribute"),
    ],
)
def test_known_messages(code: int, message: str) -> None:
    assert status_for(code).message == message
    assert str(status_for(code)) == message


@pytest.mark.parametrize("code", [70, 1000, -1])
def test_unknown_codes_do_not_raise(code: int) -> None:
    status = status_for(code)

    assert status.code == code
    assert status.is_error
    assert status.message == "unknown status"
