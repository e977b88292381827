from __future__ import annotations

from pathlib import Path

import pytest
from alembic.config import Config

from churchhub.infra import migrate

ROOT = Path(__file__).resolve().parents[1]


def test_run_upgrade_head_targets_head(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[Config, str]] = []
    monkeypatch.setattr(migrate.command, "upgrade", lambda config, revision: calls.append((config, revision)))

    migrate.run_upgrade_head(str(ROOT / "alembic.ini"))

    assert len(calls) == 1
    config, revision = calls[0]
    assert revision == "head"
    assert config.get_main_option("script_location") == "infra/migrations"
