"""
mock_stripe.py — Mock Implementation of the Payment Provider Session API (REST)

This module provides a simulated payment provider for local runs and tests of
the checkout workflow. It serves expanded checkout sessions in the provider's
JSON shape.

Simulation Scenarios (by session id prefix):
    • cs_missing_  → Unknown session (HTTP 404)
    • cs_empty_    → Session without line items
    • cs_mismatch_ → Collected amount differs from the priced items
    • cs_timeout_  → Slow response (simulates client read timeout)
    • anything else → Paid two-item session

Endpoints:
    GET /v1/checkout/sessions/{session_id}

Port:
    Default: 8002 (HTTP)
"""

import logging
import time

from fastapi import FastAPI, HTTPException

app = FastAPI(title="Mock Payment Provider")
logging.basicConfig(level=logging.INFO)

TIMEOUT_DELAY_SECONDS = 10


def _line_item(item_id: str, product_id: str, name: str, unit_amount: int, quantity: int,
               tax_rate: str = "1.20", discount_rate: str = None) -> dict:
    product_metadata = {"productId": product_id, "brand": "Textilecom"}
    if discount_rate:
        product_metadata["discountRate"] = discount_rate
    return {
        "id": item_id,
        "object": "item",
        "description": name,
        "quantity": quantity,
        "price": {
            "id": f"price_{product_id}",
            "object": "price",
            "currency": "eur",
            "unit_amount": unit_amount,
            "metadata": {"taxRate": tax_rate},
            "product": {
                "id": f"prod_{product_id}",
                "object": "product",
                "name": name,
                "images": [f"https://cdn.example.com/{product_id}.jpg"],
                "metadata": product_metadata,
            },
        },
    }


def build_session(session_id: str) -> dict:
    """
    Builds the expanded session for a scenario.

    The default session holds 2 x 25.00 (20% tax) and 1 x 50.00 with 10% off
    (20% tax): 50.00 + 10.00 tax and 45.00 + 9.00 tax, collected 114.00 EUR.
    """
    line_items = [
        _line_item("li_1", "shirt-001", "Linen Shirt", 2500, 2),
        _line_item("li_2", "pants-002", "Chino Pants", 5000, 1, discount_rate="10"),
    ]
    amount_total = 11400

    if session_id.startswith("cs_empty_"):
        line_items = []
    if session_id.startswith("cs_mismatch_"):
        amount_total = 11900

    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_total": amount_total,
        "currency": "eur",
        "customer_email": None,
        "payment_intent": f"pi_{session_id}",
        "payment_status": "paid",
        "metadata": {"userId": "user_123"},
        "customer_details": {
            "email": "customer@example.com",
            "name": "Max Mustermann",
            "phone": None,
            "address": {
                "line1": "Testweg 1",
                "line2": None,
                "city": "Berlin",
                "postal_code": "10115",
                "country": "DE",
                "state": None,
            },
        },
        "line_items": {"object": "list", "data": line_items, "has_more": False},
    }


@app.get("/v1/checkout/sessions/{session_id}")
def retrieve_session(session_id: str):
    """
    Returns an expanded checkout session.

    Raises:
        HTTPException(404): If the session id starts with "cs_missing_".
    """
    logging.info(f"[PP] Session requested: {session_id}")

    if session_id.startswith("cs_missing_"):
        logging.warning(f"[PP] Session {session_id} unknown.")
        raise HTTPException(
            status_code=404,
            detail={"error": {"type": "invalid_request_error", "message": f"No such checkout.session: '{session_id}'"}}
        )

    if session_id.startswith("cs_timeout_"):
        logging.info(f"[PP] Simulating timeout for {session_id}...")
        time.sleep(TIMEOUT_DELAY_SECONDS)

    return build_session(session_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8002)
