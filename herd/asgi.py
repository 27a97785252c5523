"""
ASGI entrypoint: expose `app` for process managers / deployments.

- En production, un process manager (ex: gunicorn -k uvicorn.workers.UvicornWorker) importe `herd.asgi:app`.
- La configuration complète est centralisée dans herd.app_setup.factory.
"""
from herd.app_setup.factory import create_app

app = create_app()
