from __future__ import annotations

import importlib
import logging
import os
import platform
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _is_linux_headless() -> bool:
    if platform.system() != "Linux":
        return False
    return not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY"))


if _is_linux_headless():
    os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


_UI_BACKEND_ERROR: str | None = None


def _detect_ui_backend_issue() -> str | None:
    try:
        importlib.import_module("PySide6")
        importlib.import_module("PySide6.QtCore")
        return None
    except Exception as exc:  # pragma: no cover - depende del host de ejecución
        return f"PySide6/Qt no disponible para tests UI: {exc}"


def pytest_configure(config: pytest.Config) -> None:
    global _UI_BACKEND_ERROR
    config.addinivalue_line("markers", "ui: tests de adaptadores PySide6")
    _UI_BACKEND_ERROR = _detect_ui_backend_issue()


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    skip_ui = None
    if _UI_BACKEND_ERROR is not None:
        skip_ui = pytest.mark.skip(reason=_UI_BACKEND_ERROR)

    for item in items:
        if "tests/ui/" in item.nodeid:
            item.add_marker(pytest.mark.ui)
        if skip_ui is not None and "ui" in item.keywords:
            item.add_marker(skip_ui)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    previous_handlers = list(root.handlers)
    previous_level = root.level
    previous_excepthook = sys.excepthook
    yield root
    for handler in list(root.handlers):
        if handler not in previous_handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(previous_level)
    sys.excepthook = previous_excepthook
