import uuid

from app.core.config import settings

API = settings.API_V1_STR

CARD = {
    "title": "Total P&L",
    "type": "card",
    "config": {"type": "card", "query": {"operation": "aggregate", "field": "pnl", "group_by": "asset_type"}},
}


def _widget(client, headers, title="Total P&L"):
    return client.post(f"{API}/widgets/", headers=headers, json={**CARD, "title": title}).json()


def test_empty_dashboard_is_created_on_first_read(client, auth_headers):
    body = client.get(f"{API}/dashboard/", headers=auth_headers).json()

    assert body["dashboard"]["layout"] == []
    assert body["widgets"] == []


def test_add_widget_and_read_with_data(client, user, auth_headers, seed_portfolio):
    seed_portfolio(user)
    first = _widget(client, auth_headers)
    second = _widget(client, auth_headers, title="Second")

    client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": first["id"]})
    layout = client.post(
        f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": second["id"]}
    ).json()["layout"]

    assert [item["position"] for item in layout] == [
        {"x": 0, "y": 0, "w": 4, "h": 3},
        {"x": 0, "y": 3, "w": 4, "h": 3},
    ]

    body = client.get(f"{API}/dashboard/", headers=auth_headers).json()
    assert [w["widget"]["title"] for w in body["widgets"]] == ["Total P&L", "Second"]
    rows = {row["label"]: row["pnl"] for row in body["widgets"][0]["data"]["rows"]}
    assert rows == {"etf": 5000, "equity": 500}


def test_update_layout_validation(client, auth_headers, create_user, headers_for):
    mine = _widget(client, auth_headers)
    theirs = _widget(client, headers_for(create_user()))

    duplicate = client.put(
        f"{API}/dashboard/",
        headers=auth_headers,
        json={"layout": [{"widget_id": mine["id"]}, {"widget_id": mine["id"]}]},
    )
    assert duplicate.status_code == 400

    foreign = client.put(
        f"{API}/dashboard/", headers=auth_headers, json={"layout": [{"widget_id": theirs["id"]}]}
    )
    assert foreign.status_code == 403

    negative = client.put(
        f"{API}/dashboard/",
        headers=auth_headers,
        json={"layout": [{"widget_id": mine["id"], "position": {"x": -1, "y": 0, "w": 0, "h": 1}}]},
    )
    assert negative.status_code == 400

    ok = client.put(
        f"{API}/dashboard/",
        headers=auth_headers,
        json={"layout": [{"widget_id": mine["id"], "position": {"x": 4, "y": 0, "w": 8, "h": 4}}]},
    )
    assert ok.status_code == 200
    assert ok.json()["layout"][0]["position"] == {"x": 4, "y": 0, "w": 8, "h": 4}


def test_add_foreign_widget_is_refused(client, auth_headers, create_user, headers_for):
    theirs = _widget(client, headers_for(create_user()))

    response = client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": theirs["id"]})
    assert response.status_code == 403

    missing = client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": str(uuid.uuid4())})
    assert missing.status_code == 404


def test_remove_widget_hides_it(client, auth_headers):
    widget = _widget(client, auth_headers)
    client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": widget["id"]})

    layout = client.post(
        f"{API}/dashboard/remove-widget", headers=auth_headers, json={"widget_id": widget["id"]}
    ).json()["layout"]

    assert layout[0]["visible"] is False
    assert client.get(f"{API}/dashboard/", headers=auth_headers).json()["widgets"] == []
    assert client.get(f"{API}/widgets/{widget['id']}", headers=auth_headers).status_code == 200

    shown = client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": widget["id"]}).json()
    assert shown["layout"][0]["visible"] is True


def test_refresh(client, user, auth_headers, seed_portfolio):
    seed_portfolio(user)
    widget = _widget(client, auth_headers)
    client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": widget["id"]})

    body = client.post(f"{API}/dashboard/refresh", headers=auth_headers).json()

    assert [w["widget_id"] for w in body["widgets"]] == [widget["id"]]
    assert body["widgets"][0]["data"]["total"] == 2
