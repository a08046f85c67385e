# extensions.py

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Single source of truth for the db object.
# It's initialized here, but not yet connected to a Flask app.
db = SQLAlchemy()
migrate = Migrate()
