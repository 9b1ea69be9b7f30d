import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    previous_pool = db._pool
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous_pool


class ScriptedClient:
    """Generation client stand-in returning queued replies or raising queued errors."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def generate(self, system_text, user_text, params=None):
        self.calls.append({"system_text": system_text, "user_text": user_text, "params": params})
        if not self.replies:
            raise AssertionError("unexpected generation call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, (dict, list)):
            return json.dumps(reply, ensure_ascii=False)
        return reply


@pytest.fixture
def scripted_client():
    return ScriptedClient


@pytest.fixture
def mt_catalog():
    from taxonomy import TaxonomyCatalog

    return TaxonomyCatalog.from_mapping(
        {
            "MT": [
                ("MT01", "Razão, proporção e porcentagem"),
                ("MT02", "Funções do primeiro e do segundo grau"),
                ("MT03", "Geometria plana: áreas e perímetros"),
                ("MT04", "Estatística: média, moda e mediana"),
            ],
            "LC": [],
        },
        names={"MT": "Matemática", "LC": "Linguagens e Códigos"},
    )
