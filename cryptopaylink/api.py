"""
HTTP surface for CryptoPayLink built on Flask.

Thin JSON endpoints over PaymentEngine. Buyers create payments and may ask for
an immediate verification; confirmation itself is decided server-side.
"""

import logging
from typing import Any, Optional

from flask import Flask, jsonify, request

from .core import PaymentEngine
from .exceptions import CryptoPayLinkError, DependencyError, NotFoundError, ValidationError
from .models import PaymentStatus

logger = logging.getLogger(__name__)


def _json_body(*required: str) -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    missing = [name for name in required if not isinstance(body.get(name), str) or not body[name].strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0], constraints={"required": list(required)})
    return body


def _product_view(product) -> dict[str, Any]:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "priceUsd": str(product.price_usd),
        "chain": product.chain.value,
        "currency": product.currency,
        "recipientWallet": product.recipient_wallet,
        "isActive": product.is_active,
    }


def _payment_view(payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "productId": payment.product_id,
        "status": payment.status.value,
        "priceQuote": str(payment.price_quote),
        "expectedAmount": str(payment.expected_crypto_amount),
        "displayAmount": str(payment.display_amount) if payment.display_amount is not None else None,
        "buyerWallet": payment.buyer_wallet,
        "txHash": payment.tx_hash,
        "createdAt": payment.created_at.isoformat(),
        "confirmedAt": payment.confirmed_at.isoformat() if payment.confirmed_at else None,
        "failureReason": payment.failure_reason,
    }


def create_app(engine: Optional[PaymentEngine] = None) -> Flask:
    """Build the Flask application around ``engine`` (a default engine if omitted)."""
    app = Flask(__name__)
    engine = engine or PaymentEngine()
    app.config["PAYMENT_ENGINE"] = engine

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        return jsonify({"error": error.message, "code": error.error_code}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(error: NotFoundError):
        return jsonify({"error": error.message, "code": error.error_code}), 404

    @app.errorhandler(DependencyError)
    def handle_dependency_error(error: DependencyError):
        return jsonify({"error": error.message, "code": error.error_code}), 503

    @app.errorhandler(CryptoPayLinkError)
    def handle_engine_error(error: CryptoPayLinkError):
        logger.error("Request failed: %s", error)
        return jsonify({"error": "Internal error", "code": error.error_code}), 500

    @app.post("/payments/create")
    def create_payment():
        body = _json_body("productId", "buyerEmail", "buyerWallet")
        payment = engine.create_payment(body["productId"], body["buyerEmail"], body["buyerWallet"])
        product = engine.get_product(payment.product_id)
        return jsonify(
            {
                "paymentId": payment.id,
                "expectedAmount": str(payment.expected_crypto_amount),
                "displayAmount": str(payment.display_amount),
                "currency": product.currency,
                "chain": product.chain.value,
                "recipientWallet": product.recipient_wallet,
            }
        )

    @app.post("/verify-payment")
    def verify_payment():
        body = _json_body("paymentId")
        payment = engine.verify_payment(body["paymentId"])
        response: dict[str, Any] = {"success": payment.is_confirmed, "status": payment.status.value}
        if payment.status == PaymentStatus.FAILED:
            response["error"] = payment.failure_reason
        if payment.tx_hash:
            response["txHash"] = payment.tx_hash
        return jsonify(response)

    @app.post("/send-confirmation")
    def send_confirmation():
        body = _json_body("paymentId")
        return jsonify({"sent": engine.send_confirmation(body["paymentId"])})

    @app.get("/products/<product_id>")
    def get_product(product_id: str):
        return jsonify(_product_view(engine.get_active_product(product_id)))

    @app.get("/payments/<payment_id>")
    def get_payment(payment_id: str):
        return jsonify(_payment_view(engine.get_payment(payment_id)))

    @app.get("/health")
    def health():
        report = engine.health()
        return jsonify(report), 200 if report["healthy"] else 503

    return app
