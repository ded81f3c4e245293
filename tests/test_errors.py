import pytest

from runcshim.errors import (
    DeadlineExceededError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    OtherError,
    ShimError,
    UnimplementedError,
)


@pytest.mark.parametrize(
    "cls",
    [
        NotFoundError,
        InvalidArgumentError,
        FailedPreconditionError,
        DeadlineExceededError,
        UnimplementedError,
        OtherError,
    ],
)
def test_every_error_is_a_shim_error(cls):
    err = cls("process already finished")
    assert isinstance(err, ShimError)
    assert err.message == "process already finished"
    assert str(err) == "process already finished"


def test_status_codes():
    assert NotFoundError("x").code == "NOT_FOUND"
    assert InvalidArgumentError("x").code == "INVALID_ARGUMENT"
    assert FailedPreconditionError("x").code == "FAILED_PRECONDITION"


def test_distinct_codes_for_specific_errors():
    errors = [
        NotFoundError("x"),
        InvalidArgumentError("x"),
        FailedPreconditionError("x"),
        DeadlineExceededError("x"),
        UnimplementedError("x"),
    ]
    codes = {err.code for err in errors}
    assert len(codes) == 5
    assert OtherError("x").code == ShimError("x").code


def test_not_found_is_not_invalid_argument():
    err = NotFoundError("no such container")
    assert not isinstance(err, InvalidArgumentError)
    assert str(err) == "no such container"