"""
Tests for process name normalization.
"""

import pytest

from lagzero_core.core.process_names import (
    expand_process_aliases,
    name_key,
    normalize_process_name,
    normalize_process_names,
    same_name_set,
)


class TestNormalizeProcessName:
    """Test single-name normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("C:\\Games\\Game.exe", "Game.exe"),
        ("/usr/bin/firefox", "firefox"),
        ("  spaced.exe  ", "spaced.exe"),
        ("", ""),
        (None, ""),
    ])
    def test_path_and_whitespace_removed(self, raw, expected):
        assert normalize_process_name(raw) == expected

    def test_bare_name_gains_exe_alias(self):
        assert expand_process_aliases("game") == ["game", "game.exe"]

    def test_dotted_name_has_no_alias(self):
        assert expand_process_aliases("game.bin") == ["game.bin"]

    def test_name_key_is_casefolded(self):
        assert name_key("D:\\X\\GAME.EXE") == "game.exe"


class TestNormalizeProcessNames:
    """Test list normalization."""

    def test_casing_aliases_and_order(self):
        names = normalize_process_names(["Game", "game.exe", " ", "/opt/Foo.exe"])

        assert names == ["Game", "game", "Game.exe", "game.exe", "Foo.exe", "foo.exe"]

    def test_lowercase_names_are_not_doubled(self):
        assert normalize_process_names(["a.exe", "a.exe"]) == ["a.exe"]

    def test_empty(self):
        assert normalize_process_names([]) == []

    def test_same_name_set(self):
        assert same_name_set(["A.exe", "b.exe"], ["B.EXE", "a.exe", "a.exe"])
        assert not same_name_set(["a.exe"], ["a.exe", "b.exe"])
