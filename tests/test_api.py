"""API tests for segment and campaign endpoints."""
from __future__ import annotations

import pytest

from alo.config import settings


def _campaign_body(**overrides) -> dict:
    body = {
        "name": "Back in stock",
        "push_title": "It's back!",
        "push_body": "The item on your wishlist is available again.",
        "push_url": "https://shop.example.com/items/42",
        "segments": [{"segmentId": "country", "segmentName": "Country", "values": ["US"]}],
    }
    body.update(overrides)
    return body


def test_list_segment_dimensions(client) -> None:
    response = client.get("/api/campaign/segments")

    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data][:4] == ["browser", "os", "device", "engagement"]
    assert {item["kind"] for item in data} == {"fixed", "derived"}


def test_list_segment_values(client, make_subscriber) -> None:
    make_subscriber(city="Lisbon")
    make_subscriber(city="Porto")

    response = client.get("/api/segments/values/city")

    assert response.status_code == 200
    assert response.json() == {"id": "city", "values": ["Lisbon", "Porto"]}


def test_unknown_segment_values_is_404(client) -> None:
    response = client.get("/api/segments/values/planet")

    assert response.status_code == 404
    assert response.json()["detail"]["details"] == {"dimension": "planet"}


def test_count_audience_accepts_both_request_shapes(client, make_subscriber) -> None:
    make_subscriber(country="US", os="iOS")
    make_subscriber(country="US", os="Android")
    make_subscriber(country="CA", os="iOS")

    wrapped = client.post(
        "/api/segments",
        json={"filters": [{"type": "country", "values": ["US"]}, {"type": "os", "values": ["iOS"]}]},
    )
    bare = client.post("/api/segments", json=[{"segmentId": "os", "values": "iOS"}])
    everyone = client.post("/api/segments", json={"filters": []})

    assert wrapped.json() == {"count": 1}
    assert bare.json() == {"count": 2}
    assert everyone.json() == {"count": 3}


@pytest.mark.parametrize(
    "filters, status_code",
    [
        ([{"type": "planet", "values": ["Mars"]}], 404),
        ([{"type": "country", "values": ["US"]}, {"type": "country", "values": ["CA"]}], 422),
    ],
)
def test_count_audience_rejects_bad_filters(client, filters, status_code) -> None:
    response = client.post("/api/segments", json={"filters": filters})

    assert response.status_code == status_code


def test_create_and_fetch_campaign(client) -> None:
    created = client.post("/api/campaigns", json=_campaign_body())

    assert created.status_code == 201
    data = created.json()
    assert data["status"] == "draft"
    assert data["title"] == "It's back!"
    assert data["segments"] == [{"type": "country", "values": ["US"]}]

    fetched = client.get(f"/api/campaigns/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Back in stock"


def test_create_rejects_insecure_urls_and_long_titles(client) -> None:
    insecure = client.post("/api/campaigns", json=_campaign_body(push_url="http://shop.example.com"))
    too_long = client.post("/api/campaigns", json=_campaign_body(push_title="x" * 66))

    assert insecure.status_code == 422
    assert insecure.json()["message"] == "Validation failed"
    assert too_long.status_code == 422


def test_campaign_lifecycle_through_api(client) -> None:
    campaign_id = client.post(
        "/api/campaigns",
        json=_campaign_body(send_at="2999-01-01T09:00:00+02:00"),
    ).json()["id"]

    published = client.post(f"/api/campaigns/{campaign_id}/publish")
    assert published.status_code == 200
    assert published.json()["status"] == "scheduled"

    cancelled = client.post(f"/api/campaigns/{campaign_id}/cancel")
    assert cancelled.json()["status"] == "cancelled"

    edited = client.put(
        f"/api/campaigns/{campaign_id}",
        json=_campaign_body(name="Back in stock (v2)", action="publish"),
    )
    assert edited.status_code == 200
    assert edited.json()["status"] == "queued"

    refused = client.post(f"/api/campaigns/{campaign_id}/cancel")
    assert refused.status_code == 409

    listed = client.get("/api/campaigns", params={"status": "queued"})
    assert [item["id"] for item in listed.json()] == [campaign_id]

    report = client.get(f"/api/campaigns/{campaign_id}/report")
    assert report.status_code == 200
    assert report.json()["outcomes"]["sent"] == 0


def test_missing_campaign_is_404(client) -> None:
    assert client.get("/api/campaigns/12345").status_code == 404
    assert client.post("/api/campaigns/12345/publish").status_code == 404


def test_admin_token_is_enforced_when_configured(client, monkeypatch) -> None:
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")

    assert client.get("/api/campaign/segments").status_code == 401
    wrong = client.get("/api/campaign/segments", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401
    allowed = client.get("/api/campaign/segments", headers={"Authorization": "Bearer s3cret"})
    assert allowed.status_code == 200


def test_segment_dimensions_expose_the_name_the_form_posts_back(client, make_subscriber) -> None:
    make_subscriber(country="US")
    dimensions = {item["id"]: item for item in client.get("/api/campaign/segments").json()}

    assert dimensions["country"]["original_name"] == "country"

    counted = client.post(
        "/api/segments",
        json=[
            {
                "segmentId": "country",
                "segmentName": dimensions["country"]["original_name"],
                "values": ["US"],
            }
        ],
    )
    assert counted.status_code == 200
    assert counted.json()["count"] == 1


def test_legacy_save_action_publishes(client) -> None:
    created = client.post("/api/campaigns", json=_campaign_body(action="save"))

    assert created.status_code == 201
    assert created.json()["status"] == "queued"

    unknown = client.post("/api/campaigns", json=_campaign_body(action="archive"))
    assert unknown.status_code == 422
