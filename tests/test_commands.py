"""Tests for chimera/commands.py."""

import pytest

from chimera.commands import parse_command
from chimera.models import Strategy


def test_series_prefix():
    assert parse_command("/series do the thing") == (Strategy.SERIES, "do the thing")


def test_parallel_prefix():
    assert parse_command("/parallel compare these") == (Strategy.PARALLEL, "compare these")


def test_plain_text_is_race():
    assert parse_command("hello") == (Strategy.RACE, "hello")


@pytest.mark.parametrize("text", ["/unknown hi", "/seriesly hi", "please /series this", " /series x"])
def test_unrecognized_prefix_is_race_and_untouched(text):
    assert parse_command(text) == (Strategy.RACE, text)


def test_only_one_separator_is_stripped():
    assert parse_command("/series  indented") == (Strategy.SERIES, " indented")


def test_newline_separator():
    assert parse_command("/parallel\nline two") == (Strategy.PARALLEL, "line two")


def test_bare_command_has_empty_prompt():
    assert parse_command("/series") == (Strategy.SERIES, "")
