from __future__ import annotations

import logging
import os
import sys

from dotenv import find_dotenv, load_dotenv

# ==========================================================
# Settlement engine: local runner
# - loads .env (python-dotenv)
# - HOST/PORT from env
# - refuses a weak SECRET_KEY / open admin API in production
# ==========================================================


def _bool_env(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def main() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)

    if not os.getenv("ENV") and os.getenv("FLASK_ENV"):
        os.environ["ENV"] = os.getenv("FLASK_ENV", "production")

    env = (os.getenv("ENV") or "production").strip().lower()
    debug = _bool_env("DEBUG", env == "development")

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "5000"))

    log = logging.getLogger("settlement.run")

    if env == "production":
        secret = os.getenv("SECRET_KEY", "").strip()
        if not secret or secret in {"dev", "dev-secret", "dev-settlement-fallback"}:
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (.env or environment).")
        if not os.getenv("ADMIN_API_TOKEN", "").strip():
            raise RuntimeError("ADMIN_API_TOKEN must be set in production: admin endpoints would be open.")

    # late import: env vars above must be loaded before config classes are evaluated
    from settlement import create_app

    app = create_app()
    log.info("Settlement engine ENV=%s DEBUG=%s HOST=%s PORT=%s", env, debug, host, port)
    log.info("Python=%s | Platform=%s", sys.version.split()[0], sys.platform)

    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
