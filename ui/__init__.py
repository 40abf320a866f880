"""Web dashboard for the node stats horizon charts."""

from __future__ import annotations

from pathlib import Path

UI_ROOT = Path(__file__).resolve().parent
TEMPLATES_DIR = UI_ROOT / "templates"
STATIC_DIR = UI_ROOT / "static"

__all__ = ["STATIC_DIR", "TEMPLATES_DIR", "UI_ROOT"]
