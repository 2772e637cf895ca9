"""Smoke tests for the ELD Alembic migration."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from eldsync.config import settings


def _config(tmp_path: Path, monkeypatch) -> tuple[Config, Path]:
    db_path = tmp_path / "eld_migrations.db"
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{db_path}")
    repo_root = Path(__file__).resolve().parents[2]
    return Config(str(repo_root / "eldsync" / "alembic.ini")), db_path


def _inspect(db_path: Path):
    engine = create_engine(f"sqlite:///{db_path}")
    try:
        insp = inspect(engine)
        tables = set(insp.get_table_names())
        indexes = {i["name"] for i in insp.get_indexes("eld_sync_job")} if "eld_sync_job" in tables else set()
    finally:
        engine.dispose()
    return tables, indexes


def test_alembic_upgrade_creates_eld_tables(tmp_path: Path, monkeypatch):
    cfg, db_path = _config(tmp_path, monkeypatch)

    command.upgrade(cfg, "001_eld_initial")

    tables, indexes = _inspect(db_path)
    assert {
        "tenant", "vehicle", "driver", "notification",
        "eld_connection", "eld_sync_job", "eld_entity_mapping",
        "eld_hos_log_event", "eld_hos_daily_log", "eld_vehicle_location",
        "eld_fault_code", "eld_ifta_mileage",
    } <= tables
    assert "uq_eld_sync_job_running" in indexes


def test_alembic_downgrade_drops_eld_tables(tmp_path: Path, monkeypatch):
    cfg, db_path = _config(tmp_path, monkeypatch)

    command.upgrade(cfg, "001_eld_initial")
    command.downgrade(cfg, "base")

    tables, _ = _inspect(db_path)
    assert not any(t.startswith("eld_") for t in tables)
