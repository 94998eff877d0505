from __future__ import annotations

from rolecoach.app.api.app import create_app

app = create_app()
