"""Flask application factory."""
import logging
import os
import traceback

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    is_production = app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'

    # Error tracking in production
    if os.getenv('SENTRY_DSN') and is_production:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    from dropshop.services.email_service import init_mail
    init_mail(app)

    from dropshop.database import init_db
    init_db(app)

    from dropshop.services.payment_service import StripeGateway
    app.extensions['stripe_gateway'] = StripeGateway.from_config(app.config)

    from dropshop.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # HTTPS behind the reverse proxy
    if is_production:
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=0)

    # Error Handlers
    from dropshop.exceptions import DropShopError

    @app.errorhandler(DropShopError)
    def handle_dropshop_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"DropShopError [{error.status_code}]: {error.message}")
        else:
            app.logger.info(f"DropShopError [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'Not Found'}), 404

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.name}), error.code
        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({'error': 'Internal server error'}), 500

    # Register blueprints
    from dropshop.blueprints.main import main_bp
    from dropshop.blueprints.orders import orders_bp
    from dropshop.blueprints.drops import drops_bp
    from dropshop.blueprints.catalog import catalog_bp
    from dropshop.blueprints.payments import payments_bp
    from dropshop.blueprints.webhooks import webhooks_bp
    from dropshop.blueprints.metrics import metrics_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(drops_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(metrics_bp)

    from dropshop.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
