from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from bson import ObjectId

import payfast
from conftest import (
    PAYFAST_PASSPHRASE,
    bearer,
    insert_coupon,
    insert_product,
    insert_user,
    order_payload,
    patch_collection,
    shipping_address,
)


def test_guest_cod_order(client, database, product, outbox):
    database.settings.insert_one({"_id": "store_settings", "shipping_fee": 50})

    response = client.post("/api/orders", json=order_payload(product, quantity=2))

    assert response.status_code == 201
    order = response.get_json()["order"]
    assert order["user"] is None
    assert order["subtotal"] == 200
    assert order["shippingCost"] == 50
    assert order["totalAmount"] == 250
    assert order["status"] == "Processing"
    assert order["paymentMethod"] == "COD"
    assert order["items"][0]["image"].endswith("Peach Slices.jpg")
    assert database.products.find_one({"_id": product["_id"]})["stock"] == 3
    assert outbox["emails"][-1]["to"] == ["thandi@example.com"]
    assert outbox["emails"][-1]["subject"] == "Order Confirmation"


def test_sale_price_is_charged(client, database):
    discounted = insert_product(database, "Peach Rings", price=100.0, sale_price=70.0)

    response = client.post("/api/orders", json=order_payload(discounted, quantity=3))

    assert response.get_json()["order"]["subtotal"] == 210


def test_missing_shipping_fields_are_listed(client, product):
    payload = order_payload(product, shippingAddress=shipping_address(city="", phone=" "))

    response = client.post("/api/orders", json=payload)

    assert response.status_code == 400
    assert response.get_json()["message"] == "Missing shipping fields: city, phone"


def test_unknown_product_and_option(client, product):
    missing_product = order_payload(product)
    missing_product["items"][0]["productId"] = str(ObjectId())
    bad_option = order_payload(product)
    bad_option["items"][0]["priceOptionId"] = str(ObjectId())

    assert client.post("/api/orders", json=missing_product).status_code == 404
    response = client.post("/api/orders", json=bad_option)
    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid price option"


def test_insufficient_stock_rejects_without_side_effects(client, database, product):
    response = client.post("/api/orders", json=order_payload(product, quantity=6))

    assert response.status_code == 400
    assert response.get_json()["message"] == "Insufficient stock for Peach Slices. Available: 5"
    assert database.orders.count_documents({}) == 0
    assert database.products.find_one({"_id": product["_id"]})["stock"] == 5


def test_guest_cannot_use_coupon(client, database, product):
    insert_coupon(database, "SAVE10")

    response = client.post("/api/orders", json=order_payload(product, couponCode="SAVE10"))

    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required for coupon use"


def test_coupon_order_updates_usage(client, database, product, user, user_headers):
    coupon = insert_coupon(database, "SAVE10")

    response = client.post(
        "/api/orders",
        json=order_payload(product, quantity=2, couponCode="save10"),
        headers=user_headers,
    )

    assert response.status_code == 201
    order = response.get_json()["order"]
    assert order["discount"] == 20
    assert order["totalAmount"] == 180
    assert order["couponUsed"] == str(coupon["_id"])
    stored = database.coupons.find_one({"_id": coupon["_id"]})
    assert stored["used_coupons"] == 1
    assert stored["used_by"] == [{"user_id": user["_id"], "times_used": 1}]

    again = client.post(
        "/api/orders",
        json=order_payload(product, couponCode="SAVE10"),
        headers=user_headers,
    )
    assert again.status_code == 400
    assert "maximum number of times" in again.get_json()["message"]


def test_invalid_coupon_code(client, product, user_headers):
    response = client.post(
        "/api/orders", json=order_payload(product, couponCode="NOPE"), headers=user_headers
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid coupon code"


def test_failed_coupon_write_rolls_back(client, database, product, user_headers, monkeypatch):
    coupon = insert_coupon(database, "SAVE10")

    def racing(original_update_one):
        def racing_update_one(filter, update, *args, **kwargs):
            # Another checkout redeems the coupon between validation and the write.
            original_update_one({"_id": coupon["_id"]}, {"$inc": {"used_coupons": 1}})
            return original_update_one(filter, update, *args, **kwargs)

        return racing_update_one

    patch_collection(monkeypatch, database, "coupons", "update_one", racing)

    response = client.post(
        "/api/orders",
        json=order_payload(product, quantity=2, couponCode="SAVE10"),
        headers=user_headers,
    )

    assert response.status_code == 409
    assert database.orders.count_documents({}) == 0
    assert database.products.find_one({"_id": product["_id"]})["stock"] == 5


def two_line_order(first, second):
    payload = order_payload(first, quantity=2)
    payload["items"].append(
        {
            "productId": str(second["_id"]),
            "priceOptionId": str(second["price_options"][0]["_id"]),
            "quantity": 1,
        }
    )
    return payload


def stock_of(database, product_document):
    return database.products.find_one({"_id": product_document["_id"]})["stock"]


def test_reservation_error_returns_earlier_items(client, database, product, monkeypatch):
    rings = insert_product(database, "Apricot Rings", stock=4)
    calls = []

    def flaky(original_find_one_and_update):
        def flaky_find_one_and_update(filter, update, *args, **kwargs):
            calls.append(filter["_id"])
            if len(calls) == 2:
                raise RuntimeError("connection reset")
            return original_find_one_and_update(filter, update, *args, **kwargs)

        return flaky_find_one_and_update

    patch_collection(monkeypatch, database, "products", "find_one_and_update", flaky)

    response = client.post("/api/orders", json=two_line_order(product, rings))

    assert response.status_code == 500
    assert database.orders.count_documents({}) == 0
    assert stock_of(database, product) == 5
    assert stock_of(database, rings) == 4


def test_concurrent_buyer_taking_stock_gives_conflict(client, database, product, monkeypatch):
    rings = insert_product(database, "Apricot Rings", stock=4)

    def racing(original_find_one_and_update):
        def racing_find_one_and_update(filter, update, *args, **kwargs):
            if filter["_id"] == rings["_id"]:
                # Someone else buys the last rings after validation.
                database.products.update_one({"_id": rings["_id"]}, {"$set": {"stock": 0}})
            return original_find_one_and_update(filter, update, *args, **kwargs)

        return racing_find_one_and_update

    patch_collection(monkeypatch, database, "products", "find_one_and_update", racing)

    response = client.post("/api/orders", json=two_line_order(product, rings))

    assert response.status_code == 409
    assert "Apricot Rings" in response.get_json()["message"]
    assert database.orders.count_documents({}) == 0
    assert stock_of(database, product) == 5
    assert stock_of(database, rings) == 0


def test_price_options_of_one_product_share_its_stock(client, database, product):
    second_option = {"_id": ObjectId(), "type": "weight-based", "weight": 500, "price": 180.0}
    database.products.update_one(
        {"_id": product["_id"]}, {"$push": {"price_options": second_option}}
    )
    payload = order_payload(product, quantity=3)
    payload["items"].append(
        {
            "productId": str(product["_id"]),
            "priceOptionId": str(second_option["_id"]),
            "quantity": 3,
        }
    )

    response = client.post("/api/orders", json=payload)

    assert response.status_code == 400
    assert response.get_json()["message"] == "Insufficient stock for Peach Slices. Available: 5"
    assert stock_of(database, product) == 5

    payload["items"][1]["quantity"] = 2
    accepted = client.post("/api/orders", json=payload)
    assert accepted.status_code == 201
    assert accepted.get_json()["order"]["subtotal"] == 660
    assert stock_of(database, product) == 0


def test_payfast_order_carries_signed_redirect(client, product):
    response = client.post("/api/orders", json=order_payload(product, paymentMethod="PayFast"))

    order = response.get_json()["order"]
    assert order["paymentMethod"] == "PayFast"
    assert order["paymentResult"]["status"] == "pending"
    redirect = urlparse(order["paymentResult"]["redirect_url"])
    params = {key: values[0] for key, values in parse_qs(redirect.query).items()}
    assert params["m_payment_id"] == order["id"]
    assert params["amount"] == "100.00"
    assert "passphrase" not in params
    signature = params.pop("signature")
    assert signature == payfast.generate_signature(params, PAYFAST_PASSPHRASE)


def test_unknown_payment_method(client, product):
    response = client.post("/api/orders", json=order_payload(product, paymentMethod="Bitcoin"))
    assert response.status_code == 400


def place(client, product, headers=None, **overrides):
    response = client.post("/api/orders", json=order_payload(product, **overrides), headers=headers)
    assert response.status_code == 201
    return response.get_json()["order"]


def test_order_access_rules(app, client, database, product, user_headers, admin_headers):
    order = place(client, product, headers=user_headers)
    stranger = insert_user(database, "stranger@example.com")

    own = client.get(f"/api/orders/{order['id']}", headers=user_headers)
    assert own.status_code == 200
    assert own.get_json()["order"]["user"]["email"] == "shopper@example.com"
    assert own.get_json()["order"]["items"][0]["product"]["name"] == "Peach Slices"

    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
    forbidden = client.get(f"/api/orders/{order['id']}", headers=bearer(app, stranger["email"]))
    assert forbidden.status_code == 403
    assert client.get(f"/api/orders/{ObjectId()}", headers=user_headers).status_code == 404
    assert client.get("/api/orders/not-an-id", headers=user_headers).status_code == 400


def test_my_orders_newest_first(client, database, product, user_headers):
    first = place(client, product, headers=user_headers)
    second = place(client, product, headers=user_headers)
    database.orders.update_one(
        {"_id": ObjectId(first["id"])},
        {"$set": {"created_at": datetime.utcnow() - timedelta(days=1)}},
    )
    place(client, product)

    response = client.get("/api/orders/my", headers=user_headers)

    assert [order["id"] for order in response.get_json()["orders"]] == [second["id"], first["id"]]


def test_admin_order_listing_paginates(client, database, user_headers, admin_headers):
    stocked = insert_product(database, "Peach Crate", stock=50)
    for _ in range(5):
        place(client, stocked)
    database.orders.update_many({}, {"$set": {"status": "Delivered"}}, upsert=False)
    place(client, stocked)

    assert client.get("/api/orders", headers=user_headers).status_code == 403
    page = client.get("/api/orders?page=2&limit=4", headers=admin_headers).get_json()
    delivered = client.get("/api/orders?status=delivered", headers=admin_headers).get_json()

    assert page["total"] == 6
    assert page["totalPages"] == 2
    assert page["currentPage"] == 2
    assert len(page["orders"]) == 2
    assert delivered["total"] == 5


def test_status_update_validation(client, product, admin_headers):
    order = place(client, product)
    url = f"/api/orders/{order['id']}/status"

    assert client.put(url, json={"status": 3}, headers=admin_headers).status_code == 400
    assert client.put(url, json={"status": "lost"}, headers=admin_headers).status_code == 400
    missing_tracking = client.put(url, json={"status": "Shipped"}, headers=admin_headers)
    assert missing_tracking.status_code == 400
    assert (
        client.put(
            f"/api/orders/{ObjectId()}/status", json={"status": "delivered"}, headers=admin_headers
        ).status_code
        == 404
    )


def test_shipping_notifies_customer(client, database, product, user, user_headers, admin_headers, outbox):
    database.users.update_one({"_id": user["_id"]}, {"$set": {"verification_method": "phone"}})
    order = place(client, product, headers=user_headers)

    response = client.put(
        f"/api/orders/{order['id']}/status",
        json={"status": "SHIPPED", "trackingId": "PF123"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.get_json()["order"]["status"] == "Shipped"
    assert response.get_json()["order"]["trackingId"] == "PF123"
    assert outbox["emails"][-1]["subject"] == "Your Order Has Shipped!"
    assert outbox["emails"][-1]["to"] == ["shopper@example.com"]
    template = outbox["whatsapp"][-1]["json"]["template"]
    assert template["name"] == "status_update"
    parameters = [entry["text"] for entry in template["components"][0]["parameters"]]
    assert parameters == [order["id"], "Shipped", "https://track.peachflask.test/PF123"]


def test_cancelling_restocks_exactly_once(client, database, product, admin_headers):
    order = place(client, product, quantity=3)
    assert database.products.find_one({"_id": product["_id"]})["stock"] == 2
    url = f"/api/orders/{order['id']}/status"

    assert client.put(url, json={"status": "cancelled"}, headers=admin_headers).status_code == 200
    assert client.put(url, json={"status": "returned"}, headers=admin_headers).status_code == 200

    assert database.products.find_one({"_id": product["_id"]})["stock"] == 5


def test_notification_failure_does_not_fail_order(app, client, database, product):
    app.config["RESEND_API_KEY"] = ""

    response = client.post("/api/orders", json=order_payload(product))

    assert response.status_code == 201
    assert database.orders.count_documents({}) == 1


def itn_payload(order_id, status="COMPLETE", passphrase=PAYFAST_PASSPHRASE):
    data = {
        "m_payment_id": order_id,
        "pf_payment_id": "1089250",
        "payment_status": status,
        "item_name": f"Order #{order_id}",
        "amount_gross": "100.00",
    }
    data["signature"] = payfast.generate_signature(data, passphrase)
    return data


def test_payfast_notification_completes_payment(client, database, product):
    order = place(client, product, paymentMethod="PayFast")

    response = client.post("/api/orders/payfast/notify", data=itn_payload(order["id"]))

    assert response.status_code == 200
    assert response.data == b""
    stored = database.orders.find_one({"_id": ObjectId(order["id"])})
    assert stored["status"] == "Processing"
    assert stored["payment_result"]["id"] == "1089250"
    assert stored["payment_result"]["status"] == "COMPLETE"


def test_failed_payment_cancels_and_restocks(client, database, product):
    order = place(client, product, paymentMethod="PayFast", quantity=2)

    response = client.post(
        "/api/orders/payfast/notify", data=itn_payload(order["id"], status="FAILED")
    )

    assert response.status_code == 200
    assert database.orders.find_one({"_id": ObjectId(order["id"])})["status"] == "Cancelled"
    assert database.products.find_one({"_id": product["_id"]})["stock"] == 5


@pytest.mark.parametrize("passphrase", ["wrong-passphrase", ""])
def test_payfast_notification_rejects_bad_signature(client, product, passphrase):
    order = place(client, product, paymentMethod="PayFast")

    response = client.post(
        "/api/orders/payfast/notify", data=itn_payload(order["id"], passphrase=passphrase)
    )

    assert response.status_code == 400
    assert response.data == b"Invalid signature"


def test_payfast_notification_for_unknown_order(client):
    response = client.post("/api/orders/payfast/notify", data=itn_payload(str(ObjectId())))
    assert response.status_code == 404


def test_sales_stats(client, database, product, user_headers, admin_headers):
    insert_coupon(database, "SAVE10")
    database.settings.insert_one({"_id": "store_settings", "shipping_fee": 50})
    place(client, product, headers=user_headers, quantity=2, couponCode="SAVE10")
    old = place(client, product)
    database.orders.update_one(
        {"_id": ObjectId(old["id"])},
        {"$set": {"created_at": datetime.utcnow() - timedelta(days=40)}},
    )

    all_time = client.get("/api/orders/stats", headers=admin_headers).get_json()["stats"]
    this_month = client.get("/api/orders/stats?period=month", headers=admin_headers).get_json()[
        "stats"
    ]

    assert all_time == {
        "totalOrders": 2,
        "totalSales": 300,
        "totalShipping": 100,
        "totalDiscount": 20,
        "totalRevenue": 380,
        "couponsUsed": 1,
    }
    assert this_month["totalOrders"] == 1
    assert this_month["totalRevenue"] == 230
    assert this_month["couponsUsed"] == 1


def test_sales_stats_with_date_range_and_no_orders(client, admin_headers):
    response = client.get(
        "/api/orders/stats?startDate=2020-01-01&endDate=2020-01-31", headers=admin_headers
    )

    assert response.get_json()["stats"] == {
        "totalOrders": 0,
        "totalSales": 0.0,
        "totalShipping": 0.0,
        "totalDiscount": 0.0,
        "totalRevenue": 0.0,
        "couponsUsed": 0,
    }


def test_sales_stats_date_only_end_excludes_next_midnight(client, database, admin_headers):
    for created_at in (datetime(2020, 1, 31, 23, 59), datetime(2020, 2, 1, 0, 0)):
        database.orders.insert_one(
            {
                "subtotal": 100.0,
                "shipping_cost": 0.0,
                "discount": 0.0,
                "total_amount": 100.0,
                "coupon_used": None,
                "status": "Delivered",
                "created_at": created_at,
            }
        )

    response = client.get(
        "/api/orders/stats?startDate=2020-01-01&endDate=2020-01-31", headers=admin_headers
    )

    assert response.get_json()["stats"]["totalOrders"] == 1


def test_late_payment_does_not_reopen_cancelled_order(client, database, product, admin_headers):
    order = place(client, product, paymentMethod="PayFast", quantity=2)
    cancelled = client.put(
        f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin_headers
    )
    assert cancelled.status_code == 200
    assert stock_of(database, product) == 5

    response = client.post("/api/orders/payfast/notify", data=itn_payload(order["id"]))

    assert response.status_code == 200
    stored = database.orders.find_one({"_id": ObjectId(order["id"])})
    assert stored["status"] == "Cancelled"
    assert stored["payment_result"]["status"] == "COMPLETE"
    assert stock_of(database, product) == 5
