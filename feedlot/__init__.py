from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from sqlalchemy import event
import logging
import os

__version__ = "0.3.0"

# Shared extension object, bound to an app inside create_app().
db = SQLAlchemy()


def _default_database_uri():
    """Returns a SQLite URI inside a writable, per-user data folder."""
    # On Windows this is typically C:\Users\<name>\AppData\Roaming
    app_data_path = os.environ.get('APPDATA')

    if app_data_path:
        data_folder = os.path.join(app_data_path, 'FeedlotManager')
    else:
        data_folder = os.path.join(os.path.expanduser("~"), '.FeedlotManager')

    os.makedirs(data_folder, exist_ok=True)
    return f"sqlite:///{os.path.join(data_folder, 'feedlot.db')}"


def _enable_sqlite_savepoints(engine):
    """
    Lets SQLAlchemy emit BEGIN itself. pysqlite delays BEGIN until the first
    write, which breaks SAVEPOINT-based nested transactions.
    """
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_app(test_config=None):
    """Application factory function."""
    app = Flask(__name__, instance_relative_config=False)
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    if test_config is None:
        app.config.from_mapping(
            SECRET_KEY=os.environ.get('FEEDLOT_SECRET_KEY', 'dev'),
            SQLALCHEMY_DATABASE_URI=os.environ.get('FEEDLOT_DATABASE_URI') or _default_database_uri(),
            SQLALCHEMY_TRACK_MODIFICATIONS=False,
            LOG_LEVEL=os.environ.get('FEEDLOT_LOG_LEVEL', 'INFO'),
        )
    else:
        app.config.from_mapping(
            SECRET_KEY='dev',
            SQLALCHEMY_TRACK_MODIFICATIONS=False,
            LOG_LEVEL='INFO',
        )
        app.config.from_mapping(test_config)

    logging.basicConfig(format='%(asctime)s %(levelname)s [%(name)s] %(message)s')
    logging.getLogger('feedlot').setLevel(app.config['LOG_LEVEL'])

    db.init_app(app)

    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(db.engine)

        from .routes import api
        app.register_blueprint(api, url_prefix='/api')

        # Create database tables for our models
        db.create_all()

        return app
