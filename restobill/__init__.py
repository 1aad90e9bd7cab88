"""Flask application factory."""
from flask import Flask, jsonify
from restobill.database import init_db
import logging
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    app.logger.setLevel(log_level)

    # Initialize Sentry for error tracking in production
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Setup Prometheus metrics instrumentation
    from restobill.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1, x_prefix=0)

    # Initialize database
    init_db(app)

    # Error Handlers
    from restobill.exceptions import RestobillError

    @app.errorhandler(RestobillError)
    def handle_restobill_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"{error.code} [{error.status_code}]: {error.message}")
        else:
            app.logger.info(f"{error.code} [{error.status_code}]: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'code': 'NotFound', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'code': 'MethodNotAllowed', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        import traceback
        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({'status': 'error', 'code': 'InternalError', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from restobill.blueprints.orders import orders_bp
    from restobill.blueprints.metrics import metrics_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from restobill.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
