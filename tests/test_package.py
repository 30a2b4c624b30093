"""Source tree conventions."""

from pathlib import Path

import pytest

PACKAGE = Path(__file__).resolve().parents[1] / "src" / "shipci"
MODULES = sorted(p for p in PACKAGE.rglob("*.py") if p.name != "__init__.py")


@pytest.mark.parametrize("path", MODULES, ids=lambda p: str(p.relative_to(PACKAGE)))
def test_module_starts_with_file_name_header(path):
    first = path.read_text(encoding="utf-8").splitlines()[0]
    assert first == f"# {path.name}"
