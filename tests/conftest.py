from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def app():
    # Without an API key every upstream connect fails fast.
    os.environ.pop("OPENAI_API_KEY", None)
    os.environ.pop("PUBLIC_BASE_URL", None)
    os.environ["LOG_LEVEL"] = "DEBUG"

    import importlib

    # Ensure clean import with the test settings.
    for module_name in [
        "config.settings",
        "api.twilio_routes",
        "main",
    ]:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    return main.app
