from pathlib import Path

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

SHIPPING = {
    "province": "Cebu",
    "city": "Cebu City",
    "barangay": "Lahug",
    "street": "12 Gorordo Ave",
    "phone": "09171234567",
}


def _listing(category_id, **overrides):
    data = {
        "title": "Denim Jacket",
        "description": "Classic cut, barely worn",
        "price": "35.50",
        "category_id": category_id,
        "condition": "like_new",
        "brand": "Levi's",
        "size": "M",
    }
    data.update(overrides)
    return data


def _images(count, content_type="image/png"):
    return [("images", (f"photo{i}.png", PNG, content_type)) for i in range(count)]


def test_root(client):
    res = client.get("/")
    assert res.status_code == 200
    assert res.json() == {"message": "Marketplace backend running"}


def test_health_reports_backend(client):
    res = client.get("/test")
    assert res.status_code == 200
    assert res.json()["backend"] == "✅ Running"


# ------------------------------------------------------------------ auth
def test_signup_and_me(client, buyer):
    headers, user = buyer
    assert user["role"] == "buyer"

    res = client.get("/api/auth/me", headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["user"]["email"] == "buyer@example.com"
    assert body["capabilities"]["is_buyer"] is True
    assert body["capabilities"]["is_seller"] is False


def test_signup_duplicate_email(client, buyer):
    res = client.post("/api/auth/signup", json={
        "email": "buyer@example.com", "password": "secret123", "full_name": "Again", "role": "buyer",
    })
    assert res.status_code == 409
    assert res.json()["detail"] == "User already registered"


def test_signup_short_password(client):
    res = client.post("/api/auth/signup", json={
        "email": "new@example.com", "password": "123", "full_name": "New", "role": "buyer",
    })
    assert res.status_code == 400
    assert res.json()["field"] == "password"


def test_login_and_logout(client, seller):
    res = client.post("/api/auth/login", json={"email": "seller@example.com", "password": "secret123"})
    assert res.status_code == 200
    headers = {"Authorization": f"Bearer {res.json()['access_token']}"}
    assert res.json()["capabilities"]["is_seller"] is True

    assert client.post("/api/auth/logout", headers=headers).json() == {"signed_out": True}
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_login_wrong_password(client, buyer):
    res = client.post("/api/auth/login", json={"email": "buyer@example.com", "password": "nope-nope"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid login credentials"


def test_protected_routes_need_a_session(client):
    assert client.get("/api/cart").status_code == 401
    assert client.get("/api/orders").status_code == 401


def test_role_guards(client, buyer, seller):
    buyer_headers, _ = buyer
    seller_headers, _ = seller
    assert client.get("/api/seller/products", headers=buyer_headers).status_code == 403
    assert client.get("/api/admin/stats", headers=seller_headers).status_code == 403
    assert client.get("/api/seller/products", headers=seller_headers).status_code == 200


def test_update_profile(client, buyer):
    headers, _ = buyer
    res = client.put("/api/profile", json={"phone": "0917", "address": "Cebu City"}, headers=headers)
    assert res.status_code == 200
    assert res.json()["phone"] == "0917"
    assert client.get("/api/profile", headers=headers).json()["address"] == "Cebu City"


def test_update_profile_without_session(client):
    assert client.put("/api/profile", json={"phone": "0917"}).status_code == 401


def test_change_password_mismatch(client, buyer):
    headers, _ = buyer
    res = client.post("/api/profile/password", json={"new_password": "abcdef", "confirm_password": "abcdeg"},
                      headers=headers)
    assert res.status_code == 400


# --------------------------------------------------------------- catalog
def test_categories_are_seeded(client):
    names = [c["name"] for c in client.get("/api/categories").json()["categories"]]
    assert names == sorted(names)
    assert "Tops" in names


def test_browse_filters(client, make_product, category_id):
    make_product("s1", "Cotton Tee", 15.0, category_id=category_id)
    make_product("s1", "Wool Coat", 25.0)
    make_product("s1", "Denim Jacket", 50.0)
    make_product("s1", "Leather Boots", 100.0)
    make_product("s1", "Designer Bag", 150.0)
    make_product("s1", "Sold Jacket", 40.0, status="sold")

    def titles(**params):
        res = client.get("/api/products", params=params)
        assert res.status_code == 200
        return {p["title"] for p in res.json()["products"]}

    assert len(titles()) == 5
    assert titles(price_range="under25") == {"Cotton Tee"}
    assert titles(price_range="25to50") == {"Wool Coat", "Denim Jacket"}
    assert titles(price_range="50to100") == {"Leather Boots"}
    assert titles(price_range="over100") == {"Designer Bag"}
    assert titles(search="JACKET") == {"Denim Jacket"}
    assert titles(search="gently") == titles()
    assert titles(category_id=category_id) == {"Cotton Tee"}
    assert client.get("/api/products", params={"price_range": "cheap"}).status_code == 400


def test_product_embeds_seller_and_category(client, seller, make_product, category_id):
    _, user = seller
    pid = make_product(user["id"], category_id=category_id)
    body = client.get(f"/api/products/{pid}").json()
    assert body["seller"]["full_name"] == "Sam Seller"
    assert body["category"]["name"] == "Tops"


def test_missing_product(client):
    assert client.get("/api/products/0123456789abcdef01234567").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 404


# ------------------------------------------------------------------ cart
def test_add_to_cart_twice(client, buyer, make_product):
    headers, _ = buyer
    pid = make_product("s1")
    first = client.post("/api/cart", json={"product_id": pid}, headers=headers).json()
    assert first["added"] is True
    second = client.post("/api/cart", json={"product_id": pid}, headers=headers).json()
    assert second["added"] is False
    assert second["already_in_cart"] is True
    assert len(client.get("/api/cart", headers=headers).json()["items"]) == 1


def test_cart_quantity_and_removal(client, buyer, make_product):
    headers, _ = buyer
    pid = make_product("s1", price=20.0)
    item_id = client.post("/api/cart", json={"product_id": pid, "size": "M"}, headers=headers).json()["item_id"]

    cart = client.put(f"/api/cart/{item_id}", json={"quantity": 3}, headers=headers).json()
    assert cart["total"] == 60.0
    # zero is ignored
    cart = client.put(f"/api/cart/{item_id}", json={"quantity": 0}, headers=headers).json()
    assert cart["items"][0]["quantity"] == 3

    cart = client.delete(f"/api/cart/{item_id}", headers=headers).json()
    assert cart == {"items": [], "total": 0}


def test_buy_now_goes_to_checkout(client, buyer, make_product):
    headers, _ = buyer
    pid = make_product("s1")
    client.post("/api/cart", json={"product_id": pid}, headers=headers)
    res = client.post("/api/cart/buy-now", json={"product_id": pid}, headers=headers).json()
    assert res["next"] == "checkout"
    assert res["already_in_cart"] is True


def test_unavailable_product_cannot_be_added(client, buyer, make_product):
    headers, _ = buyer
    pid = make_product("s1", status="pending")
    assert client.post("/api/cart", json={"product_id": pid}, headers=headers).status_code == 400


# -------------------------------------------------------------- listings
def test_create_listing_uploads_images(client, seller, category_id, object_storage):
    headers, user = seller
    res = client.post("/api/seller/products", data=_listing(category_id), files=_images(3), headers=headers)
    assert res.status_code == 200, res.text
    product = res.json()

    assert product["seller_id"] == user["id"]
    assert product["status"] == "available"
    assert product["condition"] == "like_new"
    assert product["price"] == 35.5
    assert product["image_url"].startswith(f"http://testserver/storage/product-images/{user['id']}/")
    assert len(product["additional_images"]) == 2
    stored = list(Path(object_storage.root, "product-images", user["id"]).iterdir())
    assert len(stored) == 3

    listed = client.get("/api/seller/products", headers=headers).json()["products"]
    assert [p["id"] for p in listed] == [product["id"]]


def test_create_listing_maps_legacy_condition(client, seller, category_id):
    headers, _ = seller
    res = client.post("/api/seller/products", data=_listing(category_id, condition="excellent"),
                      files=_images(1), headers=headers)
    assert res.json()["condition"] == "like_new"


def test_create_listing_image_rules(client, seller, category_id):
    headers, _ = seller
    res = client.post("/api/seller/products", data=_listing(category_id), headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Please add at least one product image"

    res = client.post("/api/seller/products", data=_listing(category_id), files=_images(6), headers=headers)
    assert res.json()["detail"] == "Maximum 5 images allowed"

    res = client.post("/api/seller/products", data=_listing(category_id),
                      files=[("images", ("notes.txt", b"hello", "text/plain"))], headers=headers)
    assert res.json()["detail"] == "notes.txt is not an image"


def test_create_listing_required_fields(client, seller, category_id):
    headers, _ = seller
    res = client.post("/api/seller/products", data=_listing(category_id, title=""), files=_images(1),
                      headers=headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Please fill in all required fields"


def test_update_listing_keeps_and_adds_images(client, seller, category_id):
    headers, _ = seller
    product = client.post("/api/seller/products", data=_listing(category_id), files=_images(2),
                          headers=headers).json()
    gallery = product["additional_images"][0]

    res = client.put(f"/api/seller/products/{product['id']}",
                     data={**_listing(category_id, price="30"), "keep_images": [gallery]},
                     files=_images(1), headers=headers)
    assert res.status_code == 200, res.text
    updated = res.json()
    assert updated["price"] == 30.0
    assert updated["image_url"] == gallery
    assert len(updated["additional_images"]) == 1
    assert product["image_url"] not in [updated["image_url"]] + updated["additional_images"]


def test_other_seller_cannot_edit_or_delete(client, seller, other_seller, category_id):
    headers, _ = seller
    other_headers, _ = other_seller
    product = client.post("/api/seller/products", data=_listing(category_id), files=_images(1),
                          headers=headers).json()
    assert client.put(f"/api/seller/products/{product['id']}", data=_listing(category_id),
                      headers=other_headers).status_code == 403
    assert client.delete(f"/api/seller/products/{product['id']}", headers=other_headers).status_code == 403
    assert client.delete(f"/api/seller/products/{product['id']}", headers=headers).json() == {"deleted": True}


def test_seller_listing_filters_and_stats(client, seller, make_product, category_id):
    headers, user = seller
    make_product(user["id"], "Cotton Tee", category_id=category_id)
    make_product(user["id"], "Wool Coat", status="sold")
    make_product(user["id"], "Draft Dress", status="draft")

    def titles(**params):
        return {p["title"] for p in client.get("/api/seller/products", params=params, headers=headers).json()["products"]}

    assert titles() == {"Cotton Tee", "Wool Coat", "Draft Dress"}
    assert titles(status="sold") == {"Wool Coat"}
    assert titles(category_id=category_id) == {"Cotton Tee"}
    assert titles(search="coat") == {"Wool Coat"}

    stats = client.get("/api/seller/stats", headers=headers).json()
    assert stats == {"total_products": 3, "available_products": 1, "sold_products": 1, "draft_products": 1}


def test_drafts_live_in_the_session(client, seller):
    headers, _ = seller
    client.put("/api/seller/drafts/new_listing", json={"title": "Half-written"}, headers=headers)
    assert client.get("/api/seller/drafts/new_listing", headers=headers).json() == {"draft": {"title": "Half-written"}}

    client.post("/api/auth/logout", headers=headers)
    login = client.post("/api/auth/login", json={"email": "seller@example.com", "password": "secret123"}).json()
    headers = {"Authorization": f"Bearer {login['access_token']}"}
    assert client.get("/api/seller/drafts/new_listing", headers=headers).json() == {"draft": None}


# -------------------------------------------------------- checkout/orders
def test_checkout_and_order_lifecycle(client, buyer, seller, other_seller, make_product):
    buyer_headers, _ = buyer
    seller_headers, seller_user = seller
    _, other_user = other_seller
    for pid in (make_product(seller_user["id"], "Denim Jacket", 30.0),
                make_product(other_user["id"], "Leather Boots", 45.0)):
        client.post("/api/cart", json={"product_id": pid}, headers=buyer_headers)

    summary = client.get("/api/checkout/summary", params={"voucher": "save10"}, headers=buyer_headers).json()
    assert summary["total"] == 67.5

    res = client.post("/api/checkout", json={
        "shipping": SHIPPING,
        "payment": {"method": "gcash", "gcash_number": "09171234567", "gcash_name": "Bea Buyer"},
        "voucher_code": "SAVE10",
    }, headers=buyer_headers)
    assert res.status_code == 200, res.text
    result = res.json()
    assert len(result["orders"]) == 2
    assert result["discount"] == 7.5

    orders = client.get("/api/orders", headers=seller_headers).json()["orders"]
    assert len(orders) == 1
    order_id = orders[0]["id"]
    assert orders[0]["payment_details"] == {"gcash_number": "09171234567", "gcash_name": "Bea Buyer"}

    assert client.put(f"/api/orders/{order_id}/status", json={"status": "shipped"},
                      headers=seller_headers).status_code == 400
    assert client.put(f"/api/orders/{order_id}/status", json={"status": "processing"},
                      headers=buyer_headers).status_code == 403
    res = client.put(f"/api/orders/{order_id}/status", json={"status": "processing"}, headers=seller_headers)
    assert res.json()["order"]["status"] == "processing"

    assert client.get("/api/orders/counts", headers=buyer_headers).json()["all"] == 2
    detail = client.get(f"/api/orders/{order_id}", headers=buyer_headers).json()
    assert detail["items"][0]["product"]["title"] == "Denim Jacket"


def test_checkout_with_empty_cart(client, buyer):
    headers, _ = buyer
    res = client.post("/api/checkout", json={"shipping": SHIPPING}, headers=headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Your cart is empty"


def test_checkout_reports_missing_shipping_field(client, buyer, make_product):
    headers, _ = buyer
    client.post("/api/cart", json={"product_id": make_product("s1")}, headers=headers)
    res = client.post("/api/checkout", json={"shipping": {**SHIPPING, "barangay": ""}}, headers=headers)
    assert res.status_code == 400
    assert res.json() == {"detail": "Please enter your barangay", "field": "barangay"}


def test_seller_can_view_own_purchases(client, seller, other_seller, make_product):
    seller_headers, _ = seller
    _, other_user = other_seller
    client.post("/api/cart", json={"product_id": make_product(other_user["id"])}, headers=seller_headers)
    client.post("/api/checkout", json={"shipping": SHIPPING}, headers=seller_headers)

    assert client.get("/api/orders", headers=seller_headers).json()["orders"] == []
    purchases = client.get("/api/orders", params={"view": "buyer"}, headers=seller_headers).json()["orders"]
    assert len(purchases) == 1


# ----------------------------------------------------------------- admin
def test_admin_changes_role(client, admin_user, buyer):
    admin_headers, _ = admin_user
    buyer_headers, buyer_profile = buyer

    res = client.put(f"/api/admin/users/{buyer_profile['id']}/role", json={"role": "seller"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "seller"
    assert client.get("/api/auth/me", headers=buyer_headers).json()["capabilities"]["is_seller"] is True

    assert client.put(f"/api/admin/users/{buyer_profile['id']}/role", json={"role": "owner"},
                      headers=admin_headers).status_code == 400


def test_admin_stats_and_analytics(client, admin_user, seller, make_product, category_id):
    admin_headers, _ = admin_user
    _, seller_user = seller
    make_product(seller_user["id"], category_id=category_id)
    make_product(seller_user["id"], status="sold", category_id=category_id)

    stats = client.get("/api/admin/stats", headers=admin_headers).json()
    assert stats["total_sellers"] == 1
    assert stats["total_products"] == 2
    assert stats["products_per_seller"] == 2.0

    analytics = client.get("/api/admin/analytics", headers=admin_headers).json()
    assert analytics["product_data"] == [{"name": "Tops", "available": 1, "sold": 1}]
    assert {"name": "Admins", "value": 1} in analytics["user_data"]


def test_admin_settings_are_audited(client, admin_user):
    headers, _ = admin_user
    settings = client.get("/api/admin/settings", headers=headers).json()
    assert settings["payments"]["cash_on_delivery"] is True

    res = client.put("/api/admin/settings", json={"commission_percent": 12.5, "payments": {"card": False}},
                     headers=headers)
    assert res.json()["commission_percent"] == 12.5
    assert res.json()["payments"]["card"] is False
    assert client.put("/api/admin/settings", json={"payments": {"crypto": True}}, headers=headers).status_code == 400

    logs = client.get("/api/admin/logs", headers=headers).json()["logs"]
    assert logs[0]["action"] == "update_settings"


def test_admin_deletes_any_product(client, admin_user, make_product):
    headers, _ = admin_user
    pid = make_product("s1")
    assert client.delete(f"/api/admin/products/{pid}", headers=headers).json() == {"deleted": True}
    assert client.get(f"/api/products/{pid}").status_code == 404
