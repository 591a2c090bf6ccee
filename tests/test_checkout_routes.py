"""
Storefront checkout: settings, shipping quotes, coupons, payments, orders and their emails.
"""

import smtplib
from unittest.mock import patch

import pytest

from storefront import coupons, documents
from storefront.settings_store import save_store_settings

pytestmark = [pytest.mark.api]

CUSTOMER = {
    "email": "ana@example.com",
    "firstName": "Ana",
    "lastName": "Silva",
    "streetAddress": "1 Rue de la Paix",
    "city": "Paris",
    "state": "IDF",
    "zipCode": "75001",
    "country": "France",
    "countryIso": "FR",
    "phone": "0600000000",
}
ITEMS = [{"name": "Mug", "price": 12.5, "quantity": 2}]

BANK = {
    "bankName": "Banque",
    "accountHolder": "Your Store SARL",
    "iban": "FR76 3000 6000 0112 3456 7890 189",
    "bic": "agrifrpp",
}


class TestStoreSettings:
    async def test_defaults_are_public(self, client):
        r = await client.get("/api/store/settings")
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["vatEnabled"] is False
        assert data["freeShippingThreshold"] == 50
        assert "stripeSecretKey" not in data["paymentMethods"]

    async def test_update_requires_admin(self, client, user_headers):
        r = await client.put("/api/store/settings", json={"vatEnabled": True}, headers=user_headers)
        assert r.status_code == 403

    async def test_update_validates_and_merges(self, client, admin_headers):
        r = await client.put("/api/store/settings", json={"vatPercentage": 120}, headers=admin_headers)
        assert r.status_code == 400
        r = await client.put("/api/store/settings", json={"currency": "euro"}, headers=admin_headers)
        assert r.status_code == 400

        r = await client.put("/api/store/settings", json={
            "vatEnabled": True,
            "currency": "usd",
            "paymentMethods": {"bankTransfer": True, "stripeSecretKey": "sk_test_x"},
        }, headers=admin_headers)
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["currency"] == "USD"
        assert data["paymentMethods"]["bankTransfer"] is True
        assert data["paymentMethods"]["cardPayments"] is True
        assert "stripeSecretKey" not in data["paymentMethods"]

        r = await client.get("/api/store/settings")
        assert r.json()["data"]["vatEnabled"] is True

    async def test_payment_methods(self, client, session):
        await save_store_settings(session, {"paymentMethods": {
            "stripePublicKey": "pk_test_1", "bankTransfer": True, "payOnDelivery": True,
        }})
        r = await client.get("/api/payments/methods")
        assert [m["id"] for m in r.json()["data"]] == ["card", "bank_transfer", "pay_on_delivery"]


class TestShippingAndQuote:
    async def seed_carriers(self, session):
        await save_store_settings(session, {"carriers": [
            {"id": "colissimo", "name": "Colissimo", "basePrice": 6.9, "enabled": True, "supportedCountries": ["FRA"]},
        ]})

    async def test_country_required(self, client):
        r = await client.get("/api/shop/shipping")
        assert r.status_code == 400

    async def test_below_threshold(self, client, session):
        await self.seed_carriers(session)
        r = await client.get("/api/shop/shipping", params={"country": "FR", "cartTotal": 20})
        body = r.json()
        assert [m["id"] for m in body["data"]] == ["colissimo"]
        assert body["selected"]["id"] == "colissimo"
        assert body["freeShipping"] == {"progress": 40.0, "remaining": 30.0, "eligible": False}

    async def test_above_threshold_selects_free(self, client, session):
        await self.seed_carriers(session)
        r = await client.get("/api/shop/shipping", params={"country": "FRA", "cartTotal": 80})
        body = r.json()
        assert [m["id"] for m in body["data"]] == ["free_shipping", "colissimo"]
        assert body["selected"]["id"] == "free_shipping"

    async def test_quote_with_coupon(self, client, session):
        await self.seed_carriers(session)
        await documents.create(session, {
            "id": "c1", "code": "WELCOME", "type": "fixed", "value": 5, "isActive": True, "usageType": "unlimited",
        }, coupons.COUPONS)
        r = await client.post("/api/checkout/quote", json={
            "items": ITEMS, "country": "FR", "shippingMethodId": "colissimo", "couponCode": "welcome",
        })
        data = r.json()["data"]
        assert data["cartTotal"] == 25.0
        assert data["shippingCost"] == 6.9
        assert data["discountAmount"] == 5.0
        assert data["total"] == 26.9
        assert data["amountCents"] == 2690
        assert data["coupon"]["code"] == "WELCOME"
        assert data["couponError"] is None

    async def test_quote_reports_coupon_problem(self, client):
        r = await client.post("/api/checkout/quote", json={"items": ITEMS, "country": "FR", "couponCode": "NOPE"})
        data = r.json()["data"]
        assert data["couponError"] == "Invalid coupon code"
        assert data["discountAmount"] == 0.0


class TestCouponRoutes:
    async def seed(self, session, **extra):
        coupon = {
            "id": "c1", "code": "SAVE20", "name": "Save", "type": "percentage", "value": 20,
            "isActive": True, "usageType": "limited", "usageLimit": 1, "usedCount": 0, **extra,
        }
        await documents.create(session, coupon, coupons.COUPONS)

    async def test_validate_requires_code_and_amount(self, client):
        r = await client.post("/api/query/public/validate-coupon", json={"orderAmount": 10})
        assert r.status_code == 400
        r = await client.post("/api/query/public/validate-coupon", json={"code": "X", "orderAmount": "abc"})
        assert r.status_code == 400

    async def test_validate(self, client, session):
        await self.seed(session)
        r = await client.post("/api/query/public/validate-coupon", json={"code": "save20", "orderAmount": 50})
        body = r.json()
        assert body["valid"] is True
        assert body["discount"]["amount"] == 10.0
        assert body["message"] == "Coupon applied! You saved €10.00"

    async def test_validate_invalid_code(self, client):
        r = await client.post("/api/query/public/validate-coupon", json={"code": "ghost", "orderAmount": 50})
        assert r.status_code == 200
        assert r.json() == {"success": True, "valid": False, "message": "Invalid coupon code"}

    async def test_coupon_without_active_flag_is_rejected(self, client, session):
        await documents.create(session, {"id": "c2", "code": "LEGACY", "type": "fixed", "value": 5}, coupons.COUPONS)
        r = await client.post("/api/query/public/validate-coupon", json={"code": "LEGACY", "orderAmount": 50})
        assert r.json() == {"success": True, "valid": False, "message": "This coupon is no longer active"}

    async def test_apply_records_usage_then_blocks(self, client, session):
        await self.seed(session)
        payload = {"couponId": "c1", "orderId": "ORD-1", "customerEmail": "ana@example.com", "orderAmount": 50, "discountAmount": 10}
        r = await client.post("/api/query/public/apply-coupon", json=payload)
        assert r.status_code == 200
        assert r.json()["data"]["usedCount"] == 1
        assert await documents.count(session, coupons.USAGE_LOGS) == 1

        r = await client.post("/api/query/public/apply-coupon", json={**payload, "orderId": "ORD-2"})
        assert r.status_code == 409

    async def test_apply_unknown_coupon(self, client):
        r = await client.post("/api/query/public/apply-coupon", json={
            "couponId": "nope", "orderId": "ORD-1", "orderAmount": 50, "discountAmount": 10,
        })
        assert r.status_code == 404


class TestPayments:
    async def test_stripe_validation(self, client):
        r = await client.post("/api/stripe", json={"amount": 0, "email": "a@b.co"})
        assert r.status_code == 400
        r = await client.post("/api/stripe", json={"amount": 1000})
        assert r.status_code == 400

    async def test_stripe_not_configured(self, client):
        r = await client.post("/api/stripe", json={"amount": 1000, "email": "a@b.co"})
        assert r.status_code == 503

    async def test_stripe_intent(self, client, session):
        await save_store_settings(session, {"paymentMethods": {"stripeSecretKey": "sk_test_abc"}})
        with patch("storefront.payments.stripe.Customer.create", return_value={"id": "cus_1"}) as cust, \
                patch("storefront.payments.stripe.PaymentIntent.create",
                      return_value={"id": "pi_1", "client_secret": "pi_1_secret"}) as intent:
            r = await client.post("/api/stripe", json={"amount": 2690, "email": "ana@example.com", "metadata": {"orderId": "ORD-1"}})
        assert r.status_code == 200
        assert r.json() == {"client_secret": "pi_1_secret", "customer_id": "cus_1", "payment_intent_id": "pi_1"}
        assert cust.call_args.kwargs["api_key"] == "sk_test_abc"
        kwargs = intent.call_args.kwargs
        assert kwargs["amount"] == 2690
        assert kwargs["currency"] == "eur"
        assert kwargs["payment_method_types"] == ["card"]
        assert kwargs["metadata"] == {"customer_email": "ana@example.com", "orderId": "ORD-1"}

    async def test_bank_transfer_instructions(self, client, session):
        r = await client.post("/api/payments/bank-transfer", json={"orderId": "ORD-1", "amount": 42})
        assert r.status_code == 400

        await save_store_settings(session, {"paymentMethods": {"bankTransfer": True, "bankTransferDetails": BANK}})
        r = await client.post("/api/payments/bank-transfer", json={"orderId": "ORD-1", "amount": 42})
        data = r.json()["data"]
        assert data["reference"] == "ORD-1"
        lines = data["qr_text"].split("\n")
        assert lines[:4] == ["BCD", "002", "1", "SCT"]
        assert lines[4] == "AGRIFRPP"
        assert lines[6] == "FR7630006000011234567890189"
        assert lines[7] == "EUR42.00"
        assert lines[10] == "ORD-1"
        assert data["qr_png_b64"]


class TestCheckoutEmail:
    def payload(self, **extra):
        return {
            "email": "ana@example.com",
            "customerName": "Ana Silva",
            "orderId": "ORD-77",
            "items": ITEMS,
            "subtotal": 25,
            "shippingCost": 6.9,
            "total": 31.9,
            "shippingAddress": {"streetAddress": "1 Rue", "city": "Paris", "zipCode": "75001", "country": "France"},
            **extra,
        }

    async def test_sends_customer_and_admin_emails(self, client, session, outbox):
        r = await client.post("/api/checkout", json={"orderData": {"total": 31.9}, "emailPayload": self.payload()})
        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True and body["orderId"] == "ORD-77"
        assert body["emailId"]

        sent = outbox()
        assert sent[0][0] == "Order Confirmation #ORD-77"
        assert sent[0][1] == ["ana@example.com"]
        assert "Mug" in sent[0][2] and "31.90" in sent[0][2]
        assert sent[1][0] == "New order #ORD-77 - Ana Silva - 31.90€"
        assert sent[1][1] == ["owner@example.com"]

        assert (await documents.read(session, "ORD-77", "orders"))["total"] == 31.9

    async def test_items_may_arrive_as_json_string(self, client, outbox):
        payload = self.payload(items='[{"name": "Tea", "price": 4, "quantity": 1}]')
        r = await client.post("/api/checkout", json={"orderData": {}, "emailPayload": payload})
        assert r.status_code == 400  # empty orderData

        r = await client.post("/api/checkout", json={"orderData": {"total": 4}, "emailPayload": payload})
        assert r.status_code == 200
        assert "Tea" in outbox()[0][2]

    async def test_payload_validation(self, client):
        for bad, detail in (
            (self.payload(email="not-an-email"), "Invalid email format"),
            (self.payload(customerName=""), "Missing required fields: customerName"),
            (self.payload(items=[{"price": 1, "quantity": 1}]), "Item 0 is missing a name"),
            (self.payload(items=[{"name": "x", "price": "?", "quantity": 1}]), "Item 0 has an invalid price or quantity"),
        ):
            r = await client.post("/api/checkout", json={"orderData": {"total": 1}, "emailPayload": bad})
            assert r.status_code == 400
            assert r.json()["detail"] == detail

    async def test_text_total_is_rejected_before_any_mail(self, client, session, mailer):
        r = await client.post("/api/checkout", json={"orderData": {"total": 1}, "emailPayload": self.payload(total="12,50")})
        assert r.status_code == 400
        assert r.json()["detail"] == "Total must be a number"
        assert not mailer.called
        assert await documents.read(session, "ORD-77", "orders") is None

    async def test_smtp_failure_is_502(self, client, mailer):
        mailer.side_effect = smtplib.SMTPException("relay down")
        r = await client.post("/api/checkout", json={"orderData": {"total": 31.9}, "emailPayload": self.payload()})
        assert r.status_code == 502


class TestOrders:
    async def test_create_order_and_customer(self, client, session, outbox):
        await save_store_settings(session, {"paymentMethods": {"cardPayments": True, "stripePublicKey": "pk_test_1"}})
        r = await client.post("/api/orders", json={
            "id": "ORD-9", "customer": CUSTOMER, "items": ITEMS, "total": 31.9, "subtotal": 25,
            "shippingCost": 6.9, "paymentMethod": "card", "giftNote": "Happy birthday",
        })
        assert r.status_code == 200
        order = r.json()["data"]
        assert order["cst_name"] == "Ana Silva"
        assert order["amount"] == 31.9
        assert order["status"] == "pending"
        assert order["giftNote"] == "Happy birthday"
        assert "sendEmail" not in order
        assert order["shipping_address"]["city"] == "Paris"

        customers = await documents.read_all(session, "customers")
        assert [c["email"] for c in customers] == ["ana@example.com"]
        assert outbox()[0][0] == "Order Confirmation #ORD-9"

        r = await client.post("/api/orders", json={"id": "ORD-9", "customer": CUSTOMER, "items": ITEMS, "total": 31.9, "paymentMethod": "card"})
        assert r.status_code == 409

    async def test_missing_data(self, client):
        r = await client.post("/api/orders", json={"customer": CUSTOMER, "items": [], "total": 10})
        assert r.status_code == 400

    async def test_payment_method_must_be_enabled(self, client, session, mailer):
        r = await client.post("/api/orders", json={"id": "ORD-10", "customer": CUSTOMER, "items": ITEMS, "total": 25})
        assert r.status_code == 400
        assert r.json()["detail"] == "paymentMethod is required"

        for method in ("pay_on_delivery", "card", "crypto"):
            r = await client.post("/api/orders", json={
                "id": "ORD-10", "customer": CUSTOMER, "items": ITEMS, "total": 25, "paymentMethod": method,
            })
            assert r.status_code == 400
            assert r.json()["detail"] == f"Payment method {method} is not enabled"
        assert await documents.read(session, "ORD-10", "orders") is None
        assert not mailer.called

    async def test_bank_transfer_order_email_has_details(self, client, session, outbox):
        await save_store_settings(session, {"paymentMethods": {"bankTransfer": True, "bankTransferDetails": BANK}})
        r = await client.post("/api/orders", json={
            "customer": CUSTOMER, "items": ITEMS, "total": 25, "paymentMethod": "bank_transfer",
        })
        assert r.json()["orderId"].startswith("ORD-")
        assert BANK["iban"] in outbox()[0][2]

    async def test_email_can_be_skipped(self, client, session, mailer):
        await save_store_settings(session, {"paymentMethods": {"payOnDelivery": True}})
        r = await client.post("/api/orders", json={
            "customer": CUSTOMER, "items": ITEMS, "total": 25, "paymentMethod": "pay_on_delivery", "sendEmail": False,
        })
        assert r.status_code == 200
        assert not mailer.called

    async def test_order_reads_are_admin_only(self, client, session, user_headers, admin_headers):
        await documents.create(session, {"id": "ORD-1", "status": "pending"}, "orders")
        assert (await client.get("/api/orders", headers=user_headers)).status_code == 403
        r = await client.get("/api/orders/ORD-1", headers=admin_headers)
        assert r.json()["data"]["status"] == "pending"
        assert (await client.get("/api/orders/ORD-404", headers=admin_headers)).status_code == 404


class TestOrderStatus:
    async def seed(self, session):
        await documents.create(session, {
            "id": "ORD-5", "status": "pending", "cst_email": "ana@example.com", "cst_name": "Ana Silva",
            "items": ITEMS, "amount": 25, "createdAt": "2024-05-01T10:00:00+00:00",
        }, "orders")

    async def test_requires_auth(self, client):
        r = await client.post("/api/orders/status", json={"orderId": "ORD-5", "newStatus": "confirmed"})
        assert r.status_code == 401

    async def test_status_change_sends_update(self, client, session, user_headers, outbox):
        await self.seed(session)
        r = await client.post("/api/orders/status", json={
            "orderId": "ORD-5", "newStatus": "in_transit", "trackingNumber": "TRK123",
        }, headers=user_headers)
        body = r.json()
        assert body["oldStatus"] == "pending"
        assert body["statusChanged"] is True
        assert body["notificationsCleared"] is True
        assert body["emailSent"] is True

        subject, recipients, html = outbox()[0]
        assert subject == "Your order #ORD-5 has shipped"
        assert recipients == ["ana@example.com"]
        assert "TRK123" in html

        stored = await documents.read(session, "ORD-5", "orders")
        assert stored["status"] == "in_transit"
        assert stored["trackingNumber"] == "TRK123"

    async def test_same_status_sends_nothing(self, client, session, user_headers, mailer):
        await self.seed(session)
        r = await client.post("/api/orders/status", json={"orderId": "ORD-5", "newStatus": "pending"}, headers=user_headers)
        body = r.json()
        assert body["statusChanged"] is False
        assert body["emailSent"] is False
        assert not mailer.called

    async def test_unknown_order(self, client, user_headers):
        r = await client.post("/api/orders/status", json={"orderId": "nope", "newStatus": "confirmed"}, headers=user_headers)
        assert r.status_code == 404
