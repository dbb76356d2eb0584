from __future__ import annotations

import logging

from celery import Celery, Task
from flask import Flask
from flask_caching import Cache
from flask_migrate import Migrate

# Bound to the app in create_app(); the SQLAlchemy handle lives in settlement.models
cache = Cache()
migrate = Migrate()

log = logging.getLogger("extensions")


def celery_init_app(app: Flask) -> Celery:
    """
    Celery app sharing the Flask config (app.config["CELERY"]); every task
    runs inside an app context. Worker: `celery -A wsgi:celery_app worker`.
    """

    class FlaskTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app = Celery(app.name, task_cls=FlaskTask)
    celery_app.config_from_object(dict(app.config.get("CELERY") or {}))
    celery_app.set_default()
    app.extensions["celery"] = celery_app

    if celery_app.conf.task_always_eager and not app.config.get("TESTING"):
        log.warning("CELERY_BROKER_URL not set: background tasks run inline")
    return celery_app


__all__ = ["cache", "migrate", "celery_init_app"]
