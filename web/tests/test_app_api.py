import os
import sys
import tempfile

import pytest

from filterforge.backend import InMemoryRuleBackend
from filterforge.engine import FilterEngine
from filterforge.filterlist_store import FilterListStore
from filterforge.rule_parser import parse


def _import_app_module():
    try:
        import flask  # noqa: F401
    except Exception as e:
        pytest.skip(f"Flask not available in this environment: {e}")

    web_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if web_dir not in sys.path:
        sys.path.insert(0, web_dir)

    os.environ.setdefault("DISABLE_BACKGROUND", "1")
    os.environ.setdefault(
        "FILTERFORGE_DB",
        os.path.join(tempfile.mkdtemp(prefix="filterforge_"), "filterforge.db"),
    )

    import app as app_module  # type: ignore

    app_module.app.testing = True
    return app_module


@pytest.fixture
def client(tmp_path, monkeypatch):
    app_module = _import_app_module()
    store = FilterListStore(db_path=os.path.join(str(tmp_path), "api.db"))
    store.init_db()
    eng = FilterEngine(store, InMemoryRuleBackend())
    monkeypatch.setattr(app_module, "engine", eng)
    c = app_module.app.test_client()
    c.engine = eng
    return c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json() == {"ok": True}


def test_status_shape(client):
    r = client.get("/api/status")
    assert r.status_code == 200
    body = r.get_json()
    for key in ("enabled", "blocking_level", "categories", "rule_count", "max_rules", "available", "stale_lists", "sync_pending"):
        assert key in body


def test_custom_rule_lifecycle_updates_backend(client):
    r = client.post("/api/custom-rules", json={"pattern": "||ads.test^", "type": "block"})
    assert r.status_code == 201
    rule_id = r.get_json()["rule"]["id"]

    r = client.get("/api/match", query_string={"url": "https://ads.test/x.js", "initiator": "site.test"})
    assert r.get_json()["action"] == "block"

    r = client.get("/api/custom-rules")
    assert [x["pattern"] for x in r.get_json()["rules"]] == ["||ads.test^"]

    r = client.delete(f"/api/custom-rules/{rule_id}")
    assert r.status_code == 200
    assert client.delete(f"/api/custom-rules/{rule_id}").status_code == 404

    r = client.get("/api/match", query_string={"url": "https://ads.test/x.js"})
    assert r.get_json()["action"] is None


def test_custom_rule_validation(client):
    r = client.post("/api/custom-rules", json={"pattern": "", "type": "block"})
    assert r.status_code == 400
    assert "pattern" in r.get_json()["error"].lower()

    r = client.post("/api/custom-rules", json={"pattern": "||x.test^", "type": "redirect"})
    assert r.status_code == 400

    r = client.post("/api/custom-rules", json={"pattern": "/(broken/", "type": "block"})
    assert r.status_code == 400

    r = client.post("/api/custom-rules", data="[1, 2]", content_type="application/json")
    assert r.status_code == 400


def test_site_lists(client):
    r = client.post("/api/sites/whitelist", json={"domain": "Example.com"})
    assert r.status_code == 200
    assert r.get_json()["domains"] == ["example.com"]

    r = client.post("/api/sites/whitelist", json={"domain": "bad domain"})
    assert r.status_code == 400

    assert client.get("/api/sites/greylist").status_code == 404

    r = client.delete("/api/sites/whitelist", query_string={"domain": "example.com"})
    assert r.get_json()["domains"] == []


def test_settings_and_lists(client):
    r = client.post("/api/settings", json={"blocking_level": "minimal"})
    assert r.status_code == 200
    assert r.get_json()["effective_categories"] == ["ads", "cryptominers", "malware"]

    r = client.post("/api/settings", json={"blocking_level": "extreme"})
    assert r.status_code == 400
    r = client.post("/api/settings", json={"enabled": "yes"})
    assert r.status_code == 400

    r = client.post("/api/lists", json={"enabled": {"easylist": False}})
    assert r.status_code == 200
    lists = {x["key"]: x for x in r.get_json()["lists"]}
    assert lists["easylist"]["enabled"] is False

    r = client.post("/api/lists", json={"enabled": {"nope": True}})
    assert r.status_code == 400


def test_refresh_is_queued(client):
    r = client.post("/api/lists/refresh")
    assert r.status_code == 202
    assert client.engine.store.get_refresh_requested() > 0


def test_cosmetics_endpoint(client):
    store = client.engine.store
    store.save_parsed("easylist", parse("example.com##.banner-ad").rules)
    client.engine.recompile_now()

    r = client.get("/api/cosmetics", query_string={"domain": "news.example.com"})
    assert r.get_json()["selectors"] == [".banner-ad"]
    assert client.get("/api/cosmetics").status_code == 400


def test_disabling_protection_empties_backend(client):
    client.post("/api/custom-rules", json={"pattern": "||ads.test^"})
    assert len(client.engine.backend) == 1
    client.post("/api/settings", json={"enabled": False})
    assert len(client.engine.backend) == 0
    r = client.get("/api/match", query_string={"url": "https://ads.test/"})
    assert r.get_json()["action"] is None


def test_export_import(client):
    client.post("/api/custom-rules", json={"pattern": "||ads.test^", "type": "allow"})
    client.post("/api/sites/blacklist", json={"domain": "evil.test"})
    exported = client.get("/api/export").get_json()
    assert exported["blacklist"] == ["evil.test"]

    client.post("/api/import", json={"customRules": [], "blacklist": []})
    assert client.get("/api/custom-rules").get_json()["rules"] == []

    r = client.post("/api/import", json=exported)
    assert r.status_code == 200
    assert client.get("/api/sites/blacklist").get_json()["domains"] == ["evil.test"]

    r = client.post("/api/import", json={"customRules": [{"pattern": "x", "type": "nope"}]})
    assert r.status_code == 400
    # The failed import left existing data in place.
    assert len(client.get("/api/custom-rules").get_json()["rules"]) == 1

    r = client.post("/api/import", json={"settings": {"enabled": "false"}})
    assert r.status_code == 400
    assert client.get("/api/settings").get_json()["enabled"] is True


def test_user_list_sources(client):
    r = client.post(
        "/api/lists/sources",
        json={"key": "my-list", "url": "https://lists.test/mine.txt", "category": "ads"},
    )
    assert r.status_code == 201
    assert r.get_json()["list"]["key"] == "my-list"

    store = client.engine.store
    store.save_parsed("my-list", parse("||mine.test^").rules)
    client.engine.recompile_now()
    r = client.get("/api/match", query_string={"url": "https://mine.test/a.js"})
    assert r.get_json()["action"] == "block"

    r = client.post("/api/lists/sources", json={"key": "easylist", "url": "https://x.test/", "category": "ads"})
    assert r.status_code == 400
    r = client.post("/api/lists/sources", json={"key": "x", "url": "ftp://x.test/", "category": "ads"})
    assert r.status_code == 400

    assert client.delete("/api/lists/sources/easylist").status_code == 400
    assert client.delete("/api/lists/sources/my-list").status_code == 200
    assert client.delete("/api/lists/sources/my-list").status_code == 404
    assert client.get("/api/match", query_string={"url": "https://mine.test/a.js"}).get_json()["action"] is None


def test_wsgi_exposes_the_flask_app():
    app_module = _import_app_module()
    import wsgi  # type: ignore

    assert wsgi.application is app_module.app
