"""WSGI entrypoint for the filterforge API.

Run with: `gunicorn -b 0.0.0.0:5000 wsgi:application`
"""

import atexit

from app import app, engine

# Let the list updater finish its current iteration on shutdown.
atexit.register(engine.stop)

application = app
