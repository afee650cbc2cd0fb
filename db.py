# backend/db.py
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# shared extension instances, bound in create_app()
db = SQLAlchemy()
migrate = Migrate()
