"""Tests for the command-line entry point."""

from __future__ import annotations

import sys

import pytest

from adbforwarder import __main__ as cli
from adbforwarder import __version__, platform_tools


def test_version(monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["adbforwarder", "--version"])
    with pytest.raises(SystemExit) as exc:
        cli.main()
    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_missing_adb_without_download_exits(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(platform_tools.shutil, "which", lambda name: None)
    monkeypatch.setattr(sys, "argv", ["adbforwarder", "--no-download", "--adb", "nope"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 1
