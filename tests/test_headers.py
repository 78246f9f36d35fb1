from __future__ import annotations

from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
COPYRIGHT = "# Copyright © 2025 404ConnerNotFound. All Rights Reserved."

SOURCES = sorted(
    [ROOT / "main.py"]
    + [path for package in ("API", "Core", "Utils", "commands") for path in (ROOT / package).rglob("*.py")]
)


@pytest.mark.parametrize("path", [p for p in SOURCES if p.read_text(encoding="utf-8").strip()],
                         ids=lambda p: str(p.relative_to(ROOT)))
def test_source_files_carry_copyright_header(path):
    head = path.read_text(encoding="utf-8").splitlines()[:4]
    assert COPYRIGHT in head
