from __future__ import annotations

import pytest

from spa_harness.errors import (
    AssertionFailure,
    CrashDetected,
    HarnessError,
    InterceptMismatch,
    NavigationTimeout,
    error_kind,
)


def test_structured_error_carries_kind_message_and_report() -> None:
    err = NavigationTimeout("page not ready", details={"pending": ["network-quiescent", "selector-present(#app)"]})
    assert err.kind == "NavigationTimeout"
    assert err.pending == ("network-quiescent", "selector-present(#app)")
    assert str(err) == "NavigationTimeout: page not ready"

    assert err.with_report("/tmp/reports/x") is err
    assert str(err).endswith("(report: /tmp/reports/x)")
    payload = err.to_dict()
    assert payload["kind"] == "NavigationTimeout"
    assert payload["reportPath"] == "/tmp/reports/x"
    assert payload["details"]["pending"] == ["network-quiescent", "selector-present(#app)"]


def test_errors_are_raisable_and_catchable_by_base() -> None:
    with pytest.raises(HarnessError) as excinfo:
        raise CrashDetected("renderer gone")
    assert excinfo.value.args == ("renderer gone",)


def test_assertion_failure_is_an_assertion_error() -> None:
    err = AssertionFailure("expected title")
    assert isinstance(err, AssertionError)
    assert error_kind(err) == "AssertionFailure"


def test_error_kind_for_foreign_exceptions() -> None:
    assert error_kind(AssertionError("x")) == "AssertionFailure"
    assert error_kind(InterceptMismatch("bad")) == "InterceptMismatch"
    assert error_kind(KeyError("k")) == "KeyError"
