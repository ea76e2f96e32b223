"""Blueprint registration."""

from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    webhooks_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
