from bson import ObjectId


def test_add_creates_default_wishlist(client, make_user, make_product):
    _, headers = make_user()
    product = make_product()

    r = client.post(f"/api/wishlist/add/{product['_id']}", headers=headers)
    assert r.status_code == 200
    wishlist = r.json()
    assert wishlist["name"] == "My Wishlist"
    assert wishlist["privacy"] == "private"
    assert [i["product"]["title"] for i in wishlist["items"]] == ["Wireless Mouse"]

    # adding twice keeps a single entry
    again = client.post(f"/api/wishlist/add/{product['_id']}", headers=headers).json()
    assert len(again["items"]) == 1
    assert len(client.get("/api/wishlist", headers=headers).json()) == 1


def test_add_to_named_wishlist(client, make_user, make_product):
    _, headers = make_user()
    _, other = make_user()
    product = make_product()
    gifts = client.post("/api/wishlist", json={"name": "Gifts"}, headers=headers).json()

    r = client.post(f"/api/wishlist/add/{product['_id']}", params={"wishlist_id": gifts["id"]}, headers=headers)
    assert r.json()["id"] == gifts["id"]

    r = client.post(f"/api/wishlist/add/{product['_id']}", params={"wishlist_id": gifts["id"]}, headers=other)
    assert r.status_code == 404
    r = client.post(f"/api/wishlist/add/{ObjectId()}", headers=headers)
    assert r.status_code == 404
    assert r.json()["detail"] == "Product not found"


def test_remove_item(client, make_user, make_product):
    _, headers = make_user()
    product = make_product()
    client.post(f"/api/wishlist/add/{product['_id']}", headers=headers)

    r = client.delete(f"/api/wishlist/remove/{product['_id']}", headers=headers)
    assert r.json()["items"] == []
    assert client.delete(f"/api/wishlist/remove/{product['_id']}", headers=headers).status_code == 404


def test_rename_and_delete(client, make_user):
    _, headers = make_user()
    _, other = make_user()
    wishlist = client.post("/api/wishlist", json={"name": "Ideas"}, headers=headers).json()
    path = f"/api/wishlist/{wishlist['id']}"

    assert client.patch(path, json={"name": " Birthday "}, headers=headers).json()["name"] == "Birthday"
    r = client.patch(path, json={"name": "  "}, headers=headers)
    assert r.status_code == 400
    assert client.get(path, headers=other).status_code == 404
    assert client.delete(path, headers=other).status_code == 404

    assert client.delete(path, headers=headers).json() == {"id": wishlist["id"], "deleted": True}
    assert client.get(path, headers=headers).status_code == 404


def test_sharing_and_toggle_bought(client, make_user, make_product):
    _, headers = make_user()
    product = make_product()
    wishlist = client.post(f"/api/wishlist/add/{product['_id']}", headers=headers).json()
    token = wishlist["share_token"]

    r = client.get(f"/api/wishlist/share/{token}")
    assert r.status_code == 404
    assert r.json()["detail"] == "Wishlist not found or is private"

    client.patch(f"/api/wishlist/{wishlist['id']}/privacy", json={"privacy": "public"}, headers=headers)
    shared = client.get(f"/api/wishlist/share/{token}").json()
    assert shared["items"][0]["product"]["title"] == "Wireless Mouse"

    body = {"token": token, "product_id": str(product["_id"]), "bought_by": "Aunt May"}
    item = client.post("/api/wishlist/shared/toggle-bought", json=body).json()["items"][0]
    assert item["is_bought"] is True
    assert item["bought_by"] == "Aunt May"

    item = client.post("/api/wishlist/shared/toggle-bought", json=body).json()["items"][0]
    assert item["is_bought"] is False
    assert item["bought_by"] is None

    body["product_id"] = str(ObjectId())
    assert client.post("/api/wishlist/shared/toggle-bought", json=body).status_code == 404


def test_privacy_is_validated(client, make_user):
    _, headers = make_user()
    wishlist = client.post("/api/wishlist", json={}, headers=headers).json()
    r = client.patch(f"/api/wishlist/{wishlist['id']}/privacy", json={"privacy": "friends"}, headers=headers)
    assert r.status_code == 422
