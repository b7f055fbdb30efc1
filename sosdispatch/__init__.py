from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from flask_session import Session

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()
login_manager = LoginManager()
server_session = Session()


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'success': False, 'message': 'Hospital login required'}), 401


def create_app(config_class='sosdispatch.config.Config'):
    """Application factory function to create and configure the Flask app"""
    app = Flask(__name__)

    # Load configuration
    app.config.from_object(config_class)
    app.config.setdefault('SESSION_SQLALCHEMY', db)

    # Initialize extensions with app
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)
    server_session.init_app(app)

    # Register blueprints
    from sosdispatch.routes import api as api_blueprint
    from sosdispatch.auth import auth as auth_blueprint
    from sosdispatch.seed import seed_demo_command
    from sosdispatch.signals import connect_logging_subscribers
    from sosdispatch.errors import register_error_handlers

    # The JSON API is consumed by dashboards and the driver app, not by forms
    csrf.exempt(api_blueprint)
    csrf.exempt(auth_blueprint)

    app.register_blueprint(api_blueprint, url_prefix='/api')
    app.register_blueprint(auth_blueprint, url_prefix='/api/auth')
    app.cli.add_command(seed_demo_command)
    register_error_handlers(app)
    connect_logging_subscribers(app)

    return app
