"""Tests for opencoder.core.evaluation."""
from __future__ import annotations

import pytest

from opencoder.core.evaluation import extract_eval_reason, parse_eval


@pytest.mark.parametrize(
    "response,expected",
    [
        ("COMPLETE\nReason: all done", "COMPLETE"),
        ("  complete - looks good", "COMPLETE"),
        ("Reviewed everything.\nCOMPLETE\nReason: ok", "COMPLETE"),
        ("NEEDS_WORK\nReason: tests fail", "NEEDS_WORK"),
        ("Some preamble\nneeds_work", "NEEDS_WORK"),
        ("Verdict:\n```\nCOMPLETE\n```", "COMPLETE"),
        ("Verdict: ```NEEDS_WORK```", "NEEDS_WORK"),
        ("I am not sure what happened", "NEEDS_WORK"),
        ("", "NEEDS_WORK"),
    ],
)
def test_parse_eval(response, expected):
    assert parse_eval(response) == expected


def test_inline_complete_without_newline_is_not_trusted():
    assert parse_eval("The work is not COMPLETE yet") == "NEEDS_WORK"


def test_first_verdict_wins_when_both_present():
    assert parse_eval("COMPLETE\nNEEDS_WORK") == "COMPLETE"


def test_extract_eval_reason():
    assert extract_eval_reason("NEEDS_WORK\nReason:  tests fail on CI \nmore") == "tests fail on CI"
    assert extract_eval_reason("COMPLETE\nreason: shipped") == "shipped"
    assert extract_eval_reason("COMPLETE") is None
