# Extension objects live here so models.py and app.py can share them
# without importing each other.
from authlib.integrations.flask_client import OAuth
from flask_cors import CORS
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
login_manager = LoginManager()
oauth = OAuth()
cors = CORS()
