# wsgi.py: WSGI entrypoint (`wsgi:app`)
import os

from app import create_app
from config import get_config

# APP_ENV picks the config class (production | development | testing)
app = create_app(get_config(os.getenv("APP_ENV", "production")))

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
