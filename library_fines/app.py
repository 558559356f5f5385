"""Library Fine Service - Flask Application.

Application factory wiring the fine, payment and reconciliation services,
their JSON blueprints and the background scheduler.
"""
import atexit
import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from library_fines.config.config import Config
from library_fines.models import close_db, init_db
from library_fines.routes import admin_fine_bp, admin_payment_bp, payment_bp
from library_fines.scheduled_tasks import shutdown_scheduler, start_scheduler
from library_fines.services import EXTENSION_KEY, build_services

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(config_object=Config, gateway=None, metrics=None) -> Flask:
    """Create the application.

    Args:
        config_object: Configuration class; its attributes are loaded into
            `app.config` and the class itself is handed to the services.
        gateway: Payment gateway to use instead of the configured Razorpay client.
        metrics: Metrics sink to use instead of a fresh `PaymentMetrics`.
    """
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.config['FINES_CONFIG'] = config_object

    # Initialize database
    with app.app_context():
        init_db()
    app.teardown_appcontext(close_db)

    app.extensions[EXTENSION_KEY] = build_services(config_object, gateway=gateway,
                                                   metrics=metrics)

    app.register_blueprint(payment_bp, url_prefix='/api/payments')
    app.register_blueprint(admin_fine_bp, url_prefix='/api/admin/fines')
    app.register_blueprint(admin_payment_bp, url_prefix='/api/admin/payments')

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'message': error.description}), error.code

    # Start background tasks
    if app.config.get('SCHEDULER_ENABLED'):
        start_scheduler(app)
        atexit.register(shutdown_scheduler)

    return app


if __name__ == '__main__':
    create_app().run(debug=True, host='0.0.0.0', port=5000)
