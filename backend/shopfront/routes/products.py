# Overview: Flask API routes for product variant stock; parses input and returns JSON responses.

from flask import Blueprint, jsonify, current_app

from ..extensions import db
from ..ids import is_uuid
from ..models import Product
from ..services import inventory_service


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _product_or_404(product_id: str):
    if not is_uuid(product_id):
        return None
    return db.session.get(Product, product_id)


@products_bp.get("/<product_id>/sizes")
def product_sizes_route(product_id: str):
    """Size-only scopes with availability, in S..5XL order. Public (storefront size picker)."""
    try:
        if _product_or_404(product_id) is None:
            return jsonify({"error": "Product not found"}), 404
        return jsonify({"sizes": inventory_service.list_product_sizes(product_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch product sizes")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/<product_id>/color-stocks")
def product_color_stocks_route(product_id: str):
    try:
        if _product_or_404(product_id) is None:
            return jsonify({"error": "Product not found"}), 404
        return jsonify({"colors": inventory_service.list_color_stocks(product_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to fetch color stocks")
        return jsonify({"error": "Internal server error"}), 500
