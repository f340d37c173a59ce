# pricebook/__init__.py

import os
import sys

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from loguru import logger
from sqlalchemy import text

from pricebook.db import db
from pricebook.errors import PricingError
from pricebook.utils.helpers import isoformat, utcnow

load_dotenv()


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///pricebook.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_SESSION_OPTIONS = {"expire_on_commit": False}
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }

    # supports_credentials=True, so origins must never be '*'
    CORS_ORIGINS = os.getenv(
        "CORS_ORIGINS",
        "http://localhost:80,http://localhost:5500,http://127.0.0.1:5500",
    ).split(",")

    ENV = os.getenv("FLASK_ENV", "development")

    PRICING_UPCOMING_HORIZON_HOURS = int(os.getenv("PRICING_UPCOMING_HORIZON_HOURS", "168"))
    PRICING_SNAPSHOT_FROM = os.getenv("PRICING_SNAPSHOT_FROM", "IDR")
    PRICING_SNAPSHOT_TO = os.getenv("PRICING_SNAPSHOT_TO", "CNY")
    PRICING_PAGE_SIZE = int(os.getenv("PRICING_PAGE_SIZE", "20"))
    PRICING_MAX_PAGE_SIZE = int(os.getenv("PRICING_MAX_PAGE_SIZE", "100"))
    PRICING_BACKDATE_GRACE_SECONDS = int(os.getenv("PRICING_BACKDATE_GRACE_SECONDS", "300"))
    # Callable returning naive UTC "now"; tests swap in a fixed clock.
    PRICING_CLOCK = None

    @staticmethod
    def assert_production_cors_origins():
        """Refuse to start in production with a wildcard or empty CORS origin list."""
        if Config.ENV == "production" and (
            "*" in Config.CORS_ORIGINS or len(Config.CORS_ORIGINS) == 0
        ):
            logger.critical(
                "CORS_ORIGINS must not contain '*' or be empty in production; check your .env file."
            )
            sys.exit(1)


def create_app():
    app = Flask(__name__)
    app.config.from_object(Config)

    if os.getenv("FLASK_ENV") == "testing":
        app.config["TESTING"] = True
        app.config["ENV"] = "testing"
        app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "connect_args": {"check_same_thread": False}
        }

    Config.assert_production_cors_origins()
    CORS(app, supports_credentials=True, origins=app.config["CORS_ORIGINS"])

    db.init_app(app)

    # Schema is migration-managed in production (alembic upgrade head).
    with app.app_context():
        from pricebook.db import models  # noqa: F401

        if app.config["ENV"].lower() != "production":
            db.create_all()
        else:
            logger.info("Production: skipping db.create_all(); make sure migrations are applied.")

    app.extensions["db"] = db

    from pricebook.api.admin.pricing import pricing_bp

    app.register_blueprint(pricing_bp)

    @app.route("/health", methods=["GET"])
    def health_check():
        db_status = "ok"
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            db_status = f"error: {e}"
            logger.error(f"Health check database error: {e}")

        return (
            jsonify(
                {
                    "status": "ok" if db_status == "ok" else "degraded",
                    "database": db_status,
                    "timestamp": isoformat(utcnow()),
                }
            ),
            200,
        )

    @app.errorhandler(PricingError)
    def pricing_error(error):
        if error.status_code >= 500:
            logger.error(f"{request.method} {request.path}: {error}")
        else:
            logger.warning(f"{request.method} {request.path} -> {error.status_code} {error.code}: {error}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(500)
    def internal_error(error):
        logger.exception(f"Internal Server Error: {error}")
        return jsonify({"error": "internal_error", "message": "Unexpected server error"}), 500

    @app.errorhandler(404)
    def not_found_error(error):
        logger.warning(f"404 Not Found: path {request.path}, IP {request.remote_addr}")
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({"error": "method_not_allowed", "message": str(error.description)}), 405

    return app
