from __future__ import annotations

from pathlib import Path

import pytest

from bettermake.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Every test runs inside its own empty directory with a quiet console."""
    monkeypatch.chdir(tmp_path)
    set_console(Console(quiet=True))
    return tmp_path


@pytest.fixture()
def write_file():
    def _write(path: str, text: str = "") -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")
        return p

    return _write
