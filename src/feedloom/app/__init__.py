from quart import Quart, jsonify
from dotenv import load_dotenv
import logging

load_dotenv()


def create_app(services=None):
    from feedloom.settings import settings

    from .services.container import AppServices
    from .services.feed_pipeline import CompositionError, InvalidFeedFilter

    if services is None:
        services = AppServices.create(settings)

    app = Quart(__name__)
    app.config["APP_NAME"] = settings.get("APP_NAME")
    app.extensions["feedloom"] = services

    logging.basicConfig(
        level=str(settings.get("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from .routes.feed import feed_bp

    app.register_blueprint(feed_bp)

    @app.errorhandler(InvalidFeedFilter)
    async def invalid_filter(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(CompositionError)
    async def composition_failed(e):
        app.logger.warning("Feed composition failed: %s", e.cause)
        return (
            jsonify(
                {
                    "error": str(e),
                    "retryable": e.retryable,
                    "generation": e.generation,
                }
            ),
            503,
        )

    @app.errorhandler(404)
    async def not_found(e):
        message = getattr(e, "description", "Not found.")
        return jsonify({"error": message}), 404

    app.logger.info("Application initialized")
    return app
