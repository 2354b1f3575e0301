"""Tests for cart module."""


def test_cart_requires_login(client):
    assert client.get("/api/cart").status_code == 401


def test_add_merges_quantities_and_totals(reader_client, make_book):
    a = make_book(price="1200.00")
    b = make_book(price="300.50")

    r = reader_client.post("/api/cart", json={"book_id": a, "quantity": 2})
    assert r.status_code == 201
    reader_client.post("/api/cart", json={"book_id": b})
    r = reader_client.post("/api/cart", json={"book_id": a, "quantity": 1})

    data = r.json["data"]
    assert [(i["book_id"], i["quantity"]) for i in data["items"]] == [(a, 3), (b, 1)]
    assert data["items"][0]["line_total"] == "3600.00"
    assert data["items"][0]["book"]["is_purchasable"] is True
    assert data["total_amount"] == "3900.50"
    assert data["item_count"] == 4


def test_add_rejects_bad_input(reader_client, make_book):
    draft = make_book(status="draft")
    sold_out = make_book(stock=0)
    ok_book = make_book()

    assert reader_client.post("/api/cart", json={"book_id": draft}).status_code == 404
    assert reader_client.post("/api/cart", json={"book_id": 99999}).status_code == 404

    r = reader_client.post("/api/cart", json={"book_id": sold_out})
    assert r.status_code == 400
    assert r.json["details"] == ["Book is not available for purchase."]

    assert reader_client.post("/api/cart", json={"book_id": ok_book, "quantity": 0}).status_code == 400
    assert reader_client.post("/api/cart", json={"book_id": ok_book, "quantity": 100}).status_code == 400
    assert reader_client.post("/api/cart", json={"book_id": ok_book, "quantity": "lots"}).status_code == 400
    assert reader_client.post("/api/cart", json={}).status_code == 400


def test_update_and_remove_items(reader_client, make_book):
    a = make_book(price="100.00")
    b = make_book(price="200.00")
    reader_client.post("/api/cart", json={"book_id": a})
    items = reader_client.post("/api/cart", json={"book_id": b}).json["data"]["items"]
    item_a, item_b = items[0]["id"], items[1]["id"]

    r = reader_client.put(f"/api/cart/{item_a}", json={"quantity": 5})
    assert r.json["message"] == "Cart updated"
    assert r.json["data"]["total_amount"] == "700.00"

    r = reader_client.put(f"/api/cart/{item_a}", json={"quantity": 0})
    assert r.json["message"] == "Item removed"
    assert [i["id"] for i in r.json["data"]["items"]] == [item_b]

    r = reader_client.delete(f"/api/cart/{item_b}")
    assert r.status_code == 200
    assert r.json["data"]["items"] == []
    assert r.json["data"]["total_amount"] == "0.00"


def test_cannot_touch_another_users_cart(reader_client, other_client, make_book):
    book_id = make_book()
    item_id = reader_client.post("/api/cart", json={"book_id": book_id}).json["data"]["items"][0]["id"]

    assert other_client.put(f"/api/cart/{item_id}", json={"quantity": 2}).status_code == 404
    assert other_client.delete(f"/api/cart/{item_id}").status_code == 404
    assert reader_client.get("/api/cart").json["data"]["item_count"] == 1


def test_clear_cart(reader_client, make_book):
    reader_client.post("/api/cart", json={"book_id": make_book()})
    reader_client.post("/api/cart", json={"book_id": make_book()})
    r = reader_client.delete("/api/cart")
    assert r.json["data"]["removed"] == 2
    assert r.json["data"]["item_count"] == 0
