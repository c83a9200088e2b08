"""
Tests for the HTTP boundary.
"""

import json
from urllib.parse import unquote

import pytest
from fastapi.testclient import TestClient

from cardsmith.api.app import create_app
from cardsmith.config import EngineConfig
from cardsmith.services.character_cards import ConversionService, InMemoryCardStore

from conftest import make_png


@pytest.fixture
def client():
    config = EngineConfig()
    service = ConversionService.from_config(config, InMemoryCardStore())
    return TestClient(create_app(service=service, config=config))


def upload(client, card, filename="card.json"):
    return client.post(
        "/api/import",
        files={"file": (filename, json.dumps(card).encode("utf-8"), "application/json")},
    )


class TestImportEndpoint:
    """POST /api/import"""

    def test_import_json(self, client, v2_card):
        response = upload(client, v2_card)

        assert response.status_code == 201
        body = response.json()
        assert body["card"]["name"] == "Nova"
        assert body["card"]["spec"] == "chara_card_v2"
        assert body["detected_dialect"] == "ccv2"
        assert body["container"] == "json"

    def test_import_failure_kind(self, client):
        response = client.post("/api/import", files={"file": ("empty.png", make_png(), "image/png")})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["kind"] == "NoEmbeddedData"
        assert detail["stage"] == "decode"

    def test_upload_limit(self, v2_card):
        config = EngineConfig(api={"max_upload_mb": 0.0001})
        client = TestClient(create_app(ConversionService(InMemoryCardStore()), config))

        response = upload(client, v2_card)

        assert response.status_code == 413


class TestBatchEndpoint:
    """POST /api/import/batch"""

    def test_mixed_batch(self, client, v2_card):
        files = [
            ("files", ("a.json", json.dumps(v2_card).encode("utf-8"), "application/json")),
            ("files", ("b.txt", b"nonsense", "text/plain")),
        ]

        response = client.post("/api/import/batch", files=files)

        assert response.status_code == 200
        body = response.json()
        assert body["success_count"] == 1
        assert body["failure_count"] == 1
        assert body["results"][1]["error_kind"] == "UnrecognizedFormat"

    def test_too_many_files(self, v2_card):
        config = EngineConfig(batch={"max_files": 1})
        client = TestClient(create_app(ConversionService(InMemoryCardStore()), config))
        payload = json.dumps(v2_card).encode("utf-8")

        response = client.post("/api/import/batch", files=[
            ("files", ("a.json", payload, "application/json")),
            ("files", ("b.json", payload, "application/json")),
        ])

        assert response.status_code == 400


class TestCardEndpoints:
    """GET/DELETE /api/cards/{id} and export."""

    def test_get_card(self, client, v2_card):
        card_id = upload(client, v2_card).json()["card"]["id"]

        response = client.get(f"/api/cards/{card_id}")

        assert response.status_code == 200
        assert response.json()["card"]["data"]["name"] == "Nova"

    def test_get_missing(self, client):
        response = client.get("/api/cards/nope")
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "CardNotFound"

    def test_export_png(self, client, v2_card):
        card_id = upload(client, v2_card).json()["card"]["id"]

        response = client.get(f"/api/cards/{card_id}/export", params={"format": "png"})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"
        assert response.content[:8] == b"\x89PNG\r\n\x1a\n"
        assert unquote(response.headers["content-disposition"]).endswith("Nova.png")

    def test_export_voxta_warning_header(self, client, v2_card):
        card_id = upload(client, v2_card).json()["card"]["id"]

        response = client.get(f"/api/cards/{card_id}/export", params={"format": "voxta"})

        assert response.status_code == 200
        assert "alternate greetings" in unquote(response.headers["x-card-warnings"])

    def test_export_unknown_format(self, client, v2_card):
        card_id = upload(client, v2_card).json()["card"]["id"]

        response = client.get(f"/api/cards/{card_id}/export", params={"format": "pdf"})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "UnsupportedConversion"

    def test_delete(self, client, v2_card):
        card_id = upload(client, v2_card).json()["card"]["id"]

        assert client.delete(f"/api/cards/{card_id}").status_code == 200
        assert client.get(f"/api/cards/{card_id}").status_code == 404


class TestConvertEndpoint:
    """POST /api/convert"""

    def test_v2_to_v3(self, client, v2_card):
        response = client.post("/api/convert", json={"from": "v2", "to": "v3", "card": v2_card})

        assert response.status_code == 200
        assert response.json()["spec"] == "chara_card_v3"

    def test_v3_to_unwrapped_v2(self, client, v3_card):
        response = client.post("/api/convert", json={"from": "v3", "to": "v2", "card": v3_card, "wrapped": False})

        assert response.status_code == 200
        body = response.json()
        assert "spec" not in body
        assert body["name"] == "Nova"

    def test_same_spec_rejected(self, client, v2_card):
        response = client.post("/api/convert", json={"from": "v2", "to": "v2", "card": v2_card})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "UnsupportedConversion"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
