from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from eventkampus.config import Settings
from eventkampus.database import Database
from eventkampus.service import create_app

from support import FakeGateway, make_settings


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture()
def database(settings: Settings) -> Database:
    db = Database(settings.db_path)
    db.initialize()
    return db


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def client(settings: Settings, database: Database, gateway: FakeGateway):
    app = create_app(settings=settings, database=database, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client
