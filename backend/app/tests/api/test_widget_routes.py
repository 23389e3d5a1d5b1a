import uuid

from sqlmodel import select

from app.core.config import settings
from app.models import Dashboard, Fork, Notification, NotificationType, Widget

API = settings.API_V1_STR

PNL_TABLE = {
    "title": "Top gainers",
    "type": "table",
    "visibility": "public",
    "config": {"type": "table", "query": {"operation": "sort", "field": "pnl", "limit": 5}},
}


def _create_widget(client, headers, **overrides):
    response = client.post(f"{API}/widgets/", headers=headers, json={**PNL_TABLE, **overrides})
    assert response.status_code == 200, response.text
    return response.json()


def test_create_widget_returns_submitted_title(client, auth_headers):
    widget = _create_widget(client, auth_headers, title="My P&L")

    assert widget["title"] == "My P&L"
    assert widget["fork_count"] == 0
    assert widget["config"]["query"] == {"operation": "sort", "field": "pnl", "limit": 5}


def test_create_widget_type_must_match_config(client, auth_headers):
    response = client.post(f"{API}/widgets/", headers=auth_headers, json={**PNL_TABLE, "type": "card"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_argument"


def test_create_widget_rejects_invalid_dsl(client, auth_headers):
    response = client.post(
        f"{API}/widgets/",
        headers=auth_headers,
        json={**PNL_TABLE, "type": "chart", "config": {"type": "chart", "query": {"operation": "sort", "field": "pnl"}}},
    )
    assert response.status_code == 400


def test_list_widgets_with_visibility_filter(client, auth_headers):
    _create_widget(client, auth_headers)
    _create_widget(client, auth_headers, title="Private one", visibility="private")

    everything = client.get(f"{API}/widgets/", headers=auth_headers).json()
    assert everything["count"] == 2

    private = client.get(f"{API}/widgets/", headers=auth_headers, params={"visibility": "private"}).json()
    assert [w["title"] for w in private["data"]] == ["Private one"]


def test_read_widget_computes_data_for_the_caller(
    client, user, auth_headers, create_user, headers_for, seed_portfolio
):
    widget = _create_widget(client, auth_headers)
    viewer = create_user()
    seed_portfolio(viewer)

    body = client.get(f"{API}/widgets/{widget['id']}", headers=headers_for(viewer)).json()

    assert body["widget"]["id"] == widget["id"]
    assert body["data"]["rows"][0]["symbol"] == "NIFTYBEES"

    # The owner has no portfolio yet.
    assert client.get(f"{API}/widgets/{widget['id']}", headers=auth_headers).json()["data"] is None


def test_private_widget_is_hidden_from_others(client, auth_headers, create_user, headers_for):
    widget = _create_widget(client, auth_headers, visibility="private")
    stranger = headers_for(create_user())

    response = client.get(f"{API}/widgets/{widget['id']}", headers=stranger)
    assert response.status_code == 403
    assert response.json()["details"]["reason"] == "private_widget"


def test_update_and_delete_are_owner_only(client, auth_headers, create_user, headers_for):
    widget = _create_widget(client, auth_headers)
    stranger = headers_for(create_user())

    assert client.put(f"{API}/widgets/{widget['id']}", headers=stranger, json={"title": "Mine"}).status_code == 403
    assert client.delete(f"{API}/widgets/{widget['id']}", headers=stranger).status_code == 403

    updated = client.put(f"{API}/widgets/{widget['id']}", headers=auth_headers, json={"title": "Renamed"})
    assert updated.json()["title"] == "Renamed"

    assert client.delete(f"{API}/widgets/{widget['id']}", headers=auth_headers).json() == {"success": True}
    assert client.get(f"{API}/widgets/{widget['id']}", headers=auth_headers).status_code == 404


def test_fork_flow(client, db, user, auth_headers, create_user, headers_for):
    widget = _create_widget(client, auth_headers)
    forker = create_user(username="copycat")

    response = client.post(f"{API}/widgets/{widget['id']}/fork", headers=headers_for(forker))

    assert response.status_code == 200
    body = response.json()
    forked = body["forked_widget"]
    assert body["added_to_dashboard"] is True
    assert forked["owner_id"] == str(forker.id)
    assert forked["forked_from"] == widget["id"]
    assert forked["visibility"] == "private"

    db.expire_all()
    original = db.get(Widget, uuid.UUID(widget["id"]))
    assert original.fork_count == 1

    dashboard = db.exec(select(Dashboard).where(Dashboard.user_id == forker.id)).one()
    assert [item["widget_id"] for item in dashboard.layout] == [forked["id"]]

    notification = db.exec(select(Notification).where(Notification.user_id == user.id)).one()
    assert notification.type == NotificationType.FORK
    assert "copycat" in notification.message
    assert notification.data["widget_id"] == widget["id"]

    forks = client.get(f"{API}/widgets/{widget['id']}/forks", headers=auth_headers).json()
    assert forks["count"] == 1
    assert forks["data"][0]["forking_username"] == "copycat"


def test_fork_rules(client, auth_headers, create_user, headers_for):
    public = _create_widget(client, auth_headers)
    private = _create_widget(client, auth_headers, visibility="private")
    forker = headers_for(create_user())

    own = client.post(f"{API}/widgets/{public['id']}/fork", headers=auth_headers)
    assert own.status_code == 400

    hidden = client.post(f"{API}/widgets/{private['id']}/fork", headers=forker)
    assert hidden.status_code == 403

    assert client.post(f"{API}/widgets/{public['id']}/fork", headers=forker).status_code == 200
    again = client.post(f"{API}/widgets/{public['id']}/fork", headers=forker)
    assert again.status_code == 409
    assert again.json()["code"] == "already_exists"


def test_deleting_original_keeps_forks(client, db, auth_headers, create_user, headers_for):
    widget = _create_widget(client, auth_headers)
    forker = create_user()
    forked = client.post(f"{API}/widgets/{widget['id']}/fork", headers=headers_for(forker)).json()

    client.delete(f"{API}/widgets/{widget['id']}", headers=auth_headers)

    db.expire_all()
    copy = db.get(Widget, uuid.UUID(forked["forked_widget"]["id"]))
    assert copy is not None
    assert copy.forked_from is None
    assert db.exec(select(Fork)).all() == []


def test_delete_only_touches_dashboards_that_show_the_widget(
    client, db, user, auth_headers, create_user, headers_for
):
    widget = _create_widget(client, auth_headers)
    client.post(f"{API}/dashboard/add-widget", headers=auth_headers, json={"widget_id": widget["id"]})
    other = create_user(username="bystander")
    other_headers = headers_for(other)
    other_widget = _create_widget(client, other_headers, visibility="private")
    client.post(f"{API}/dashboard/add-widget", headers=other_headers, json={"widget_id": other_widget["id"]})
    before = db.exec(select(Dashboard).where(Dashboard.user_id == other.id)).one().updated_at

    assert client.delete(f"{API}/widgets/{widget['id']}", headers=auth_headers).status_code == 200

    db.expire_all()
    mine = db.exec(select(Dashboard).where(Dashboard.user_id == user.id)).one()
    theirs = db.exec(select(Dashboard).where(Dashboard.user_id == other.id)).one()
    assert mine.layout == []
    assert [item["widget_id"] for item in theirs.layout] == [other_widget["id"]]
    assert theirs.updated_at == before
