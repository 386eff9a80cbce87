# Overview: WSGI entrypoint; FLASK_APP target for the CLI and production servers.

from valet import create_app

app = create_app()
