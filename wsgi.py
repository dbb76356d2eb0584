# wsgi.py: settlement engine entrypoint
#   web:    gunicorn wsgi:app
#   worker: celery -A wsgi:celery_app worker
from __future__ import annotations

import logging
import os
import time

from dotenv import find_dotenv, load_dotenv

env_path = find_dotenv(usecwd=True)
if env_path:
    load_dotenv(env_path, override=False)

if not os.getenv("ENV") and os.getenv("FLASK_ENV"):
    os.environ["ENV"] = os.getenv("FLASK_ENV", "production")

log = logging.getLogger("wsgi")

from settlement import create_app  # noqa: E402

t0 = time.time()
app = create_app()
log.info("create_app() OK in %.3fs (ENV=%s)", time.time() - t0, app.config.get("ENV"))

celery_app = app.extensions["celery"]
