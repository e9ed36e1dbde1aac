from __future__ import annotations

# gunicorn entry point (`gunicorn wsgi:app`) for the rental back-office API.
# DATABASE_URL must be set before import: Config refuses to start without it.
from rental_app.app import create_app


app = create_app()
