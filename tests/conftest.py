from __future__ import annotations

import logging
import os

import pytest

from vault_export.logging import JsonFormatter, PlainFormatter, setup_logging


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # Tests must not pick up a developer's vault settings or credentials.
    for name in list(os.environ):
        if name.startswith("VAULT_EXPORT_"):
            monkeypatch.delenv(name, raising=False)
    yield
    if getattr(setup_logging, "_configured", False):
        setattr(setup_logging, "_configured", False)
        root = logging.getLogger()
        for handler in list(root.handlers):
            if isinstance(handler.formatter, (PlainFormatter, JsonFormatter)):
                root.removeHandler(handler)
                handler.close()
